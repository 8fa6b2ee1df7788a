# azure_helpers.py
import json
import time
import urllib.request
import uuid
from urllib.error import URLError

from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError
from azure.identity import ClientSecretCredential
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters
from azure.mgmt.datafactory import DataFactoryManagementClient
from azure.mgmt.datafactory.models import Factory, FactoryIdentity, FactoryUpdateParameters
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.storage import StorageManagementClient
from azure.mgmt.storage.models import (
    IPRule, NetworkRuleSet, Sku, StorageAccountCheckNameAvailabilityParameters,
    StorageAccountCreateParameters, StorageAccountUpdateParameters
)
from azure.storage.blob import BlobServiceClient

# Built-in role: Storage Blob Data Contributor
STORAGE_BLOB_DATA_CONTRIBUTOR = 'ba92f5b4-2d11-453d-a403-e96b0029c9fe'

IP_SERVICES = [
    'https://api.ipify.org?format=json',
    'https://ifconfig.me/ip',
    'https://icanhazip.com'
]


def _error_code(error):
    """Vendor error code from an azure-core HttpResponseError, if any"""
    odata = getattr(error, 'error', None)
    code = getattr(odata, 'code', None)
    if code:
        return code
    message = str(error)
    for known in ('PrincipalNotFound', 'RoleAssignmentExists', 'AuthorizationFailure'):
        if known in message:
            return known
    return None


def get_current_ip():
    """Get current public IP address for the storage firewall"""
    for service in IP_SERVICES:
        try:
            with urllib.request.urlopen(service, timeout=5) as response:
                if 'json' in service:
                    data = json.loads(response.read().decode())
                    return True, data.get('ip', 'Unknown')
                ip = response.read().decode().strip()
                if ip:
                    return True, ip
        except (URLError, OSError, ValueError):
            continue

    return False, "Could not determine IP address"


class AzureServices:
    """Control plane access for one resource group, storage account and data factory"""

    def __init__(self, config, retry_delay=10, max_attempts=12):
        self.config = config
        self.subscription_id = config.subscription_id
        self.resource_group = config.resource_group
        self.location = config.location
        self.storage_account = config.storage_account
        self.factory_name = config.factory_name
        self.retry_delay = retry_delay
        self.max_attempts = max_attempts

        # Validate credentials before creating ClientSecretCredential
        missing = config.missing_credentials()
        if missing:
            raise ValueError(
                f"Missing required Azure credentials: {', '.join(missing)}. "
                f"Please set these as environment variables or in a .env file."
            )

        self.credential = ClientSecretCredential(
            tenant_id=config.tenant_id,
            client_id=config.client_id,
            client_secret=config.client_secret
        )

        self._resource_client = None
        self._storage_client = None
        self._adf_client = None
        self._auth_client = None
        self._blob_service_client = None

    # ==================== CLIENTS ====================

    @property
    def resource_client(self):
        if self._resource_client is None:
            self._resource_client = ResourceManagementClient(self.credential, self.subscription_id)
        return self._resource_client

    @property
    def storage_client(self):
        if self._storage_client is None:
            self._storage_client = StorageManagementClient(self.credential, self.subscription_id)
        return self._storage_client

    @property
    def adf_client(self):
        """Data Factory Management Client"""
        if self._adf_client is None:
            self._adf_client = DataFactoryManagementClient(self.credential, self.subscription_id)
        return self._adf_client

    @property
    def auth_client(self):
        if self._auth_client is None:
            self._auth_client = AuthorizationManagementClient(self.credential, self.subscription_id)
        return self._auth_client

    @property
    def storage_account_id(self):
        return (
            f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.Storage/storageAccounts/{self.storage_account}"
        )

    @property
    def blob_endpoint(self):
        return f"https://{self.storage_account}.blob.core.windows.net/"

    # ==================== RESOURCE GROUP ====================

    def ensure_resource_group(self):
        """Create the resource group if it does not exist"""
        name = self.resource_group
        if self.resource_client.resource_groups.check_existence(name):
            print(f"✓ Resource group exists: {name}")
            return self.resource_client.resource_groups.get(name)

        print(f"Creating resource group: {name} ({self.location})...")
        result = self.resource_client.resource_groups.create_or_update(
            name,
            {'location': self.location}
        )
        print(f"✓ Resource group created: {result.name}")
        return result

    # ==================== STORAGE ACCOUNT ====================

    def _ip_rules(self, allowed_ips):
        return [IPRule(ip_address_or_range=ip, action='Allow') for ip in allowed_ips]

    def ensure_storage_account(self, allowed_ips=None):
        """
        Create the storage account with a deny-by-default firewall.
        Trusted Azure services (Data Factory included) bypass the firewall;
        allowed_ips are added as IP rules.
        """
        name = self.storage_account
        allowed_ips = list(allowed_ips or [])

        try:
            account = self.storage_client.storage_accounts.get_properties(self.resource_group, name)
        except ResourceNotFoundError:
            account = None

        if account is not None:
            print(f"✓ Storage account exists: {name}")
            self._ensure_ip_rules(account, allowed_ips)
            return account

        availability = self.storage_client.storage_accounts.check_name_availability(
            StorageAccountCheckNameAvailabilityParameters(name=name)
        )
        if not availability.name_available:
            raise ValueError(
                f"Storage account name '{name}' is not available "
                f"({availability.reason}): {availability.message}"
            )

        print(f"Creating storage account: {name}...")
        if allowed_ips:
            print(f"  Allowed IPs: {', '.join(allowed_ips)}")

        parameters = StorageAccountCreateParameters(
            sku=Sku(name='Standard_LRS'),
            kind='StorageV2',
            location=self.location,
            enable_https_traffic_only=True,
            minimum_tls_version='TLS1_2',
            allow_blob_public_access=False,
            network_rule_set=NetworkRuleSet(
                default_action='Deny',
                bypass='AzureServices',
                ip_rules=self._ip_rules(allowed_ips)
            )
        )
        poller = self.storage_client.storage_accounts.begin_create(self.resource_group, name, parameters)
        result = poller.result()
        print(f"✓ Storage account created: {result.name}")
        return result

    def _ensure_ip_rules(self, account, allowed_ips):
        """Add any allowed IP that the existing firewall does not list yet"""
        rule_set = account.network_rule_set
        if rule_set is None or not allowed_ips:
            return account

        existing = {rule.ip_address_or_range for rule in (rule_set.ip_rules or [])}
        missing = [ip for ip in allowed_ips if ip not in existing]
        if not missing:
            return account

        print(f"Adding IP rules to storage firewall: {', '.join(missing)}")
        rule_set.ip_rules = list(rule_set.ip_rules or []) + self._ip_rules(missing)
        result = self.storage_client.storage_accounts.update(
            self.resource_group,
            self.storage_account,
            StorageAccountUpdateParameters(network_rule_set=rule_set)
        )
        print("✓ Storage firewall updated")
        return result

    # ==================== DATA FACTORY ====================

    def ensure_data_factory(self):
        """Create the data factory with a system-assigned managed identity"""
        name = self.factory_name
        try:
            factory = self.adf_client.factories.get(self.resource_group, name)
        except ResourceNotFoundError:
            factory = None

        if factory is not None and factory.identity is not None and factory.identity.principal_id:
            print(f"✓ Data Factory exists: {name}")
            return factory

        if factory is not None:
            # create_or_update would drop repo configuration, tags and global parameters
            print(f"Enabling managed identity on Data Factory: {name}...")
            result = self.adf_client.factories.update(
                self.resource_group,
                name,
                FactoryUpdateParameters(identity=FactoryIdentity(type='SystemAssigned'))
            )
        else:
            print(f"Creating Data Factory: {name}...")
            result = self.adf_client.factories.create_or_update(
                self.resource_group,
                name,
                Factory(location=self.location, identity=FactoryIdentity(type='SystemAssigned'))
            )
        print(f"✓ Data Factory ready: {result.name}")
        if result.identity is not None:
            print(f"  Managed identity principal: {result.identity.principal_id}")
        return result

    def ensure_storage_role_assignment(self, principal_id):
        """Grant the factory identity Storage Blob Data Contributor on the storage account"""
        scope = self.storage_account_id
        role_definition_id = (
            f"/subscriptions/{self.subscription_id}/providers/Microsoft.Authorization"
            f"/roleDefinitions/{STORAGE_BLOB_DATA_CONTRIBUTOR}"
        )

        assignments = self.auth_client.role_assignments.list_for_scope(
            scope, filter=f"principalId eq '{principal_id}'"
        )
        for assignment in assignments:
            if (assignment.role_definition_id or '').lower().endswith(STORAGE_BLOB_DATA_CONTRIBUTOR):
                print("✓ Data Factory identity already has Storage Blob Data Contributor")
                return assignment

        print("Granting Storage Blob Data Contributor to Data Factory identity...")
        parameters = RoleAssignmentCreateParameters(
            role_definition_id=role_definition_id,
            principal_id=principal_id,
            principal_type='ServicePrincipal'
        )

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = self.auth_client.role_assignments.create(scope, str(uuid.uuid4()), parameters)
                print("✓ Role assignment created")
                return result
            except ResourceExistsError:
                print("✓ Role assignment already exists")
                return None
            except HttpResponseError as e:
                code = _error_code(e)
                if code == 'RoleAssignmentExists':
                    print("✓ Role assignment already exists")
                    return None
                if code != 'PrincipalNotFound' or attempt == self.max_attempts:
                    raise
                # New identities take a while to replicate in Azure AD
                print(f"  Identity not replicated yet, retrying in {self.retry_delay}s "
                      f"({attempt}/{self.max_attempts})")
                time.sleep(self.retry_delay)

    def provision(self, allowed_ips=None):
        """Resource group, storage account, data factory and its storage role"""
        self.ensure_resource_group()
        self.ensure_storage_account(allowed_ips)
        factory = self.ensure_data_factory()
        if factory.identity is not None and factory.identity.principal_id:
            self.ensure_storage_role_assignment(factory.identity.principal_id)
        else:
            print("⚠ Data Factory has no managed identity principal; skipping role assignment")
        return factory

    # ==================== BLOB STORAGE OPERATIONS ====================

    def get_blob_service_client(self):
        """Get Blob Service Client using the account key"""
        if self._blob_service_client is None:
            keys = self.storage_client.storage_accounts.list_keys(self.resource_group, self.storage_account)
            storage_key = keys.keys[0].value
            connection_string = (
                f"DefaultEndpointsProtocol=https;"
                f"AccountName={self.storage_account};"
                f"AccountKey={storage_key};"
                f"EndpointSuffix=core.windows.net"
            )
            self._blob_service_client = BlobServiceClient.from_connection_string(connection_string)
        return self._blob_service_client

    def ensure_container(self, container_name):
        """Create a blob container unless it exists. Returns 'created' or 'exists'."""
        blob_client = self.get_blob_service_client()
        container_client = blob_client.get_container_client(container_name)

        for attempt in range(1, self.max_attempts + 1):
            try:
                try:
                    container_client.get_container_properties()
                    return 'exists'
                except ResourceNotFoundError:
                    pass
                try:
                    container_client.create_container()
                except ResourceExistsError:
                    return 'exists'
                return 'created'
            except HttpResponseError as e:
                # Firewall changes take time to propagate
                if e.status_code != 403 or attempt == self.max_attempts:
                    raise
                print(f"  Storage firewall not ready, retrying in {self.retry_delay}s "
                      f"({attempt}/{self.max_attempts})")
                time.sleep(self.retry_delay)

    def create_table_containers(self, tables):
        """Create one container per table"""
        results = {}
        for table in tables:
            status = self.ensure_container(table.container)
            marker = '✓' if status == 'created' else '•'
            print(f"{marker} Container {table.container} ({status}) for {table.qualified_name}")
            results[table.container] = status
        return results
