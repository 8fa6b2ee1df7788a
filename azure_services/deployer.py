# deployer.py
import time

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.mgmt.datafactory.models import DatasetResource, PipelineResource

# Final run status -> (marker, verb)
RUN_OUTCOMES = {
    'Succeeded': ('✓', 'succeeded'),
    'Failed': ('✗', 'failed'),
    'Cancelled': ('⚠', 'was cancelled'),
}
TERMINAL_STATUSES = tuple(RUN_OUTCOMES)


class PipelineDeployer:
    """Pushes generated ADF JSON documents to a data factory"""

    def __init__(self, adf_client, resource_group, factory_name):
        self.client = adf_client
        self.resource_group = resource_group
        self.factory_name = factory_name

    def _operations(self, kind):
        if kind == 'dataset':
            return self.client.datasets, DatasetResource
        if kind == 'pipeline':
            return self.client.pipelines, PipelineResource
        raise ValueError(f"Unknown document kind: {kind}")

    def exists(self, kind, name):
        operations, _ = self._operations(kind)
        try:
            return operations.get(self.resource_group, self.factory_name, name) is not None
        except ResourceNotFoundError:
            return False

    def deploy_document(self, kind, document):
        """Update-or-create one dataset or pipeline. Returns 'created' or 'updated'."""
        operations, model = self._operations(kind)
        name = document['name']
        action = 'updated' if self.exists(kind, name) else 'created'
        print(f"{'Updating' if action == 'updated' else 'Creating'} {kind}: {name}...")

        resource = model.deserialize(document)
        result = operations.create_or_update(self.resource_group, self.factory_name, name, resource)
        print(f"✓ {kind.capitalize()} {action}: {result.name}")
        return action

    def deploy(self, topology):
        """Deploy every document in dependency order"""
        summary = {'created': [], 'updated': []}
        for kind, document in topology.documents():
            action = self.deploy_document(kind, document)
            summary[action].append(document['name'])
        return summary

    # ==================== Runs ====================

    def run_pipeline(self, pipeline_name, parameters=None):
        """Trigger a run. Returns the run id, or None when ADF refuses the run."""
        print(f"Triggering run: {pipeline_name}...")
        try:
            run = self.client.pipelines.create_run(
                self.resource_group, self.factory_name, pipeline_name, parameters=parameters or {}
            )
        except HttpResponseError as e:
            print(f"✗ Run not started for {pipeline_name}: {e.message or e}")
            return None
        print(f"✓ Run started: {run.run_id}")
        return run.run_id

    def monitor_pipeline(self, run_id, check_interval=10):
        """Wait for a run to finish and return its final status"""
        if not run_id:
            print("⚠ Nothing to monitor: the run did not start")
            return None

        print(f"Waiting for run {run_id} (every {check_interval}s, Ctrl+C to stop waiting)")
        last_status = None
        try:
            while True:
                run = self.client.pipeline_runs.get(self.resource_group, self.factory_name, run_id)
                if run.status != last_status:
                    print(f"  {time.strftime('%H:%M:%S')} {run.status}")
                    last_status = run.status
                if run.status in TERMINAL_STATUSES:
                    break
                time.sleep(check_interval)
        except KeyboardInterrupt:
            print(f"\n⚠ Stopped waiting; run {run_id} continues in the factory")
            return None

        marker, verb = RUN_OUTCOMES[run.status]
        duration = getattr(run, 'duration_in_ms', None)
        elapsed = f" after {duration / 1000:.0f}s" if duration else ''
        print(f"{marker} Run {run_id} {verb}{elapsed}")
        if run.status == 'Failed' and getattr(run, 'message', None):
            print(f"  {run.message}")
        return run.status
