from types import SimpleNamespace
from unittest.mock import MagicMock, call

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.mgmt.datafactory.models import (
    AzureBlobStorageLinkedService, DatasetResource, ExecutePipelineActivity, IfConditionActivity, ParquetDataset,
    PipelineResource
)

from azure_services import deployer as deployer_module
from azure_services.deployer import PipelineDeployer
from pipelines.table_metadata import TableSpec
from pipelines.templates import build_topology, generate_resource_names

LINKED_SERVICES = {'bigquery': 'BigQueryLS', 'blob': 'BlobLS'}


def make_topology():
    tables = [
        TableSpec('orders', dataset='sales', file_format='parquet', container='orders'),
        TableSpec('items', dataset='sales', file_format='json', container='items'),
    ]
    return build_topology(tables, LINKED_SERVICES)


def make_client(existing=()):
    client = MagicMock()

    def get(rg, factory, name):
        if name in existing:
            return SimpleNamespace(name=name)
        raise ResourceNotFoundError(f'{name} not found')

    for operations in (client.datasets, client.pipelines):
        operations.get.side_effect = get
        operations.create_or_update.side_effect = (
            lambda rg, factory, name, resource: SimpleNamespace(name=name)
        )
    return client


def test_new_pipeline_is_created_from_json():
    client = make_client()
    deployer = PipelineDeployer(client, 'rg', 'adf')
    child = make_topology().children[0]

    assert deployer.deploy_document('pipeline', child) == 'created'

    rg, factory, name, resource = client.pipelines.create_or_update.call_args[0]
    assert (rg, factory, name) == ('rg', 'adf', 'Copy_sales_orders')
    assert isinstance(resource, PipelineResource)
    assert isinstance(resource.activities[0], IfConditionActivity)
    assert resource.parameters['fileFormat'].default_value == 'parquet'


def test_existing_dataset_is_updated():
    names = generate_resource_names()
    client = make_client(existing={names['parquet_dataset']})
    deployer = PipelineDeployer(client, 'rg', 'adf')
    parquet = make_topology().datasets[1]

    assert deployer.deploy_document('dataset', parquet) == 'updated'

    resource = client.datasets.create_or_update.call_args[0][3]
    assert isinstance(resource, DatasetResource)
    assert isinstance(resource.properties, ParquetDataset)
    assert resource.properties.linked_service_name.reference_name == 'BlobLS'


def test_deploy_pushes_documents_in_dependency_order():
    topology = make_topology()
    names = generate_resource_names()
    client = make_client(existing={names['bigquery_dataset'], 'Copy_sales_orders'})
    deployer = PipelineDeployer(client, 'rg', 'adf')

    summary = deployer.deploy(topology)

    dataset_calls = [c[0][2] for c in client.datasets.create_or_update.call_args_list]
    pipeline_calls = [c[0][2] for c in client.pipelines.create_or_update.call_args_list]
    assert dataset_calls == [d['name'] for d in topology.datasets]
    assert pipeline_calls == ['Copy_sales_orders', 'Copy_sales_items', names['master_pipeline']]

    master = client.pipelines.create_or_update.call_args_list[-1][0][3]
    assert all(isinstance(a, ExecutePipelineActivity) for a in master.activities)

    assert summary['updated'] == [names['bigquery_dataset'], 'Copy_sales_orders']
    assert len(summary['created']) == 4


def test_run_pipeline_returns_run_id():
    client = MagicMock()
    client.pipelines.create_run.return_value = SimpleNamespace(run_id='run-1')
    deployer = PipelineDeployer(client, 'rg', 'adf')

    assert deployer.run_pipeline('Master') == 'run-1'
    client.pipelines.create_run.assert_called_once_with('rg', 'adf', 'Master', parameters={})


def test_run_pipeline_failure_returns_none():
    client = MagicMock()
    client.pipelines.create_run.side_effect = HttpResponseError(message='PipelineNotFound')
    deployer = PipelineDeployer(client, 'rg', 'adf')

    assert deployer.run_pipeline('Missing') is None


def test_monitor_pipeline_polls_until_terminal(monkeypatch, capsys):
    monkeypatch.setattr(deployer_module.time, 'sleep', lambda seconds: None)
    client = MagicMock()
    client.pipeline_runs.get.side_effect = [
        SimpleNamespace(status='Queued'),
        SimpleNamespace(status='InProgress'),
        SimpleNamespace(status='Failed', message='Copy failed', duration_in_ms=None),
    ]
    deployer = PipelineDeployer(client, 'rg', 'adf')

    assert deployer.monitor_pipeline('run-1', check_interval=0) == 'Failed'
    assert client.pipeline_runs.get.call_args_list == [call('rg', 'adf', 'run-1')] * 3
    output = capsys.readouterr().out
    assert '✗ Run run-1 failed' in output
    assert 'Copy failed' in output


def test_monitor_pipeline_without_run_id():
    deployer = PipelineDeployer(MagicMock(), 'rg', 'adf')
    assert deployer.monitor_pipeline(None) is None


def test_sdk_models_use_the_msrest_api():
    # deploy_document and the linked-service cache need azure-mgmt-datafactory 9.x models
    assert callable(getattr(PipelineResource, 'deserialize', None))
    assert callable(getattr(DatasetResource, 'deserialize', None))
    assert AzureBlobStorageLinkedService(service_endpoint='https://acct.blob.core.windows.net/').type == 'AzureBlobStorage'


def test_v2_topology_deserializes_to_v2_models():
    from azure.mgmt.datafactory.models import GoogleBigQueryV2ObjectDataset, GoogleBigQueryV2Source

    linked_services = dict(LINKED_SERVICES, bigquery_type='GoogleBigQueryV2')
    tables = [TableSpec('orders', dataset='sales', file_format='parquet', container='orders')]
    topology = build_topology(tables, linked_services)
    client = make_client()
    deployer = PipelineDeployer(client, 'rg', 'adf')

    deployer.deploy(topology)

    bigquery = client.datasets.create_or_update.call_args_list[0][0][3]
    assert isinstance(bigquery.properties, GoogleBigQueryV2ObjectDataset)
    child = client.pipelines.create_or_update.call_args_list[0][0][3]
    copy = child.activities[0].if_true_activities[0]
    assert isinstance(copy.source, GoogleBigQueryV2Source)
