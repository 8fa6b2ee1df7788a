# linked_services.py
"""
Find the BigQuery and Blob Storage linked services the generated pipelines
will reference. Asks the user when the choice is ambiguous or nothing exists.
"""

from azure.mgmt.datafactory.models import (
    AzureBlobStorageLinkedService, GoogleBigQueryLinkedService, LinkedServiceResource, SecureString
)

BIGQUERY_TYPES = ('GoogleBigQuery', 'GoogleBigQueryV2')
BLOB_TYPES = ('AzureBlobStorage',)

DEFAULT_NAMES = {
    'bigquery': 'BigQueryLinkedService',
    'blob': 'BlobStorageLinkedService',
}


class LinkedServiceResolutionError(RuntimeError):
    """No usable linked service could be determined"""


def linked_service_type(resource):
    properties = getattr(resource, 'properties', None)
    return getattr(properties, 'type', None)


class LinkedServiceResolver:
    def __init__(self, adf_client, resource_group, factory_name, config, interactive=True, prompt=input):
        self.client = adf_client
        self.resource_group = resource_group
        self.factory_name = factory_name
        self.config = config
        self.interactive = interactive
        self.prompt = prompt
        self._existing = None

    def list_linked_services(self, refresh=False):
        """{name: type} for every linked service in the factory"""
        if self._existing is None or refresh:
            services = self.client.linked_services.list_by_factory(self.resource_group, self.factory_name)
            self._existing = {ls.name: linked_service_type(ls) for ls in services}
        return self._existing

    # ==================== PROMPTS ====================

    def _ask(self, message):
        return self.prompt(message).strip()

    def _confirm(self, message):
        return self._ask(f"{message} [y/N]: ").lower() in ('y', 'yes')

    def _choose(self, label, candidates):
        if not self.interactive:
            raise LinkedServiceResolutionError(
                f"Several {label} linked services found ({', '.join(candidates)}). "
                f"Set the preferred name in the environment or pass it on the command line."
            )

        print(f"Several {label} linked services found:")
        for index, name in enumerate(candidates, start=1):
            print(f"  {index}. {name}")
        while True:
            answer = self._ask(f"Choose {label} linked service [1-{len(candidates)}]: ")
            if answer in candidates:
                return answer
            if answer.isdigit() and 1 <= int(answer) <= len(candidates):
                return candidates[int(answer) - 1]
            print(f"✗ Invalid choice: {answer!r}")

    # ==================== CREATION ====================

    def _create(self, name, ls_type, properties):
        print(f"Creating linked service: {name}...")
        result = self.client.linked_services.create_or_update(
            self.resource_group,
            self.factory_name,
            name,
            LinkedServiceResource(properties=properties)
        )
        self.list_linked_services()[result.name] = ls_type
        print(f"✓ Linked service created: {result.name}")
        return result.name

    def create_blob_linked_service(self, name, blob_endpoint):
        """Blob Storage linked service authenticated with the factory's managed identity"""
        properties = AzureBlobStorageLinkedService(
            service_endpoint=blob_endpoint,
            account_kind='StorageV2',
            description='Managed identity access to the BigQuery export storage account'
        )
        return self._create(name, 'AzureBlobStorage', properties)

    def create_bigquery_linked_service(self, name):
        """BigQuery linked service using OAuth user authentication"""
        config = self.config
        properties = GoogleBigQueryLinkedService(
            project=config.bigquery_project,
            authentication_type='UserAuthentication',
            client_id=config.bigquery_client_id,
            client_secret=SecureString(value=config.bigquery_client_secret),
            refresh_token=SecureString(value=config.bigquery_refresh_token),
            request_google_drive_scope=False,
            description='BigQuery source for the table copy pipelines'
        )
        return self._create(name, 'GoogleBigQuery', properties)

    # ==================== RESOLUTION ====================

    def _resolve(self, kind, label, types, preferred, create):
        existing = self.list_linked_services()
        candidates = sorted(name for name, ls_type in existing.items() if ls_type in types)

        if preferred:
            if preferred in candidates:
                print(f"✓ Using {label} linked service: {preferred}")
                return preferred
            if preferred in existing:
                print(f"⚠ Linked service '{preferred}' is of type {existing[preferred]}, not {label}")
            else:
                print(f"⚠ Linked service '{preferred}' not found in {self.factory_name}")

        if len(candidates) == 1:
            print(f"✓ Found {label} linked service: {candidates[0]}")
            return candidates[0]

        if len(candidates) > 1:
            choice = self._choose(label, candidates)
            print(f"✓ Using {label} linked service: {choice}")
            return choice

        name = preferred or DEFAULT_NAMES[kind]
        if preferred in existing:
            name = DEFAULT_NAMES[kind]
        if name in existing:
            raise LinkedServiceResolutionError(
                f"No {label} linked service found and '{name}' already exists as {existing[name]}. "
                f"Set the preferred {label} linked service name to one that is free."
            )
        if self.interactive and not self._confirm(f"No {label} linked service found. Create '{name}'?"):
            raise LinkedServiceResolutionError(f"No {label} linked service available in {self.factory_name}")
        return create(name)

    def resolve_blob(self, blob_endpoint):
        return self._resolve(
            'blob', 'Blob Storage', BLOB_TYPES, self.config.blob_linked_service,
            lambda name: self.create_blob_linked_service(name, blob_endpoint)
        )

    def resolve_bigquery(self):
        return self._resolve(
            'bigquery', 'BigQuery', BIGQUERY_TYPES, self.config.bigquery_linked_service,
            self._create_or_reference_bigquery
        )

    def _create_or_reference_bigquery(self, name):
        if self.config.has_bigquery_credentials() and self.config.bigquery_project:
            return self.create_bigquery_linked_service(name)

        message = (
            "BigQuery credentials are not configured (BIGQUERY_PROJECT_ID, BIGQUERY_CLIENT_ID, "
            "BIGQUERY_CLIENT_SECRET, BIGQUERY_REFRESH_TOKEN)"
        )
        if not self.interactive:
            raise LinkedServiceResolutionError(f"Cannot create BigQuery linked service: {message}")

        print(f"⚠ {message}")
        answer = self._ask("Name of an existing BigQuery linked service to reference (blank to abort): ")
        if not answer:
            raise LinkedServiceResolutionError("No BigQuery linked service available")
        return answer

    def resolve_all(self, blob_endpoint):
        """{'bigquery': name, 'bigquery_type': type, 'blob': name}"""
        print("Resolving linked services")
        print("-" * 80)
        bigquery = self.resolve_bigquery()
        bigquery_type = self.list_linked_services().get(bigquery)
        if bigquery_type not in BIGQUERY_TYPES:
            # Referenced by name only; assume the original connector
            bigquery_type = BIGQUERY_TYPES[0]
        result = {
            'bigquery': bigquery,
            'bigquery_type': bigquery_type,
            'blob': self.resolve_blob(blob_endpoint),
        }
        print()
        return result
