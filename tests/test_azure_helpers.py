from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError

from azure_services import azure_helpers
from azure_services.azure_helpers import STORAGE_BLOB_DATA_CONTRIBUTOR, AzureServices
from pipelines.table_metadata import TableSpec


def make_config(**overrides):
    values = dict(
        tenant_id='tenant',
        client_id='client',
        client_secret='secret',
        subscription_id='sub',
        resource_group='rg',
        location='eastus',
        storage_account='acct',
        factory_name='adf',
    )
    values.update(overrides)
    config = SimpleNamespace(**values)
    config.missing_credentials = lambda: [
        k for k in ('tenant_id', 'client_id', 'client_secret', 'subscription_id') if not values[k]
    ]
    return config


@pytest.fixture
def services():
    services = AzureServices(make_config(), retry_delay=0, max_attempts=3)
    services._resource_client = MagicMock()
    services._storage_client = MagicMock()
    services._adf_client = MagicMock()
    services._auth_client = MagicMock()
    services._blob_service_client = MagicMock()
    return services


def http_error(message, status_code=None):
    error = HttpResponseError(message=message)
    error.status_code = status_code
    return error


def test_missing_credentials_are_reported_together():
    with pytest.raises(ValueError, match='AZURE_TENANT_ID'):
        AzureServices(SimpleNamespace(
            subscription_id='sub', resource_group='rg', location='eastus',
            storage_account='acct', factory_name='adf',
            missing_credentials=lambda: ['AZURE_TENANT_ID', 'AZURE_CLIENT_SECRET'],
        ))


# ==================== Resource group ====================

def test_existing_resource_group_is_skipped(services):
    groups = services._resource_client.resource_groups
    groups.check_existence.return_value = True

    services.ensure_resource_group()

    groups.create_or_update.assert_not_called()


def test_missing_resource_group_is_created(services):
    groups = services._resource_client.resource_groups
    groups.check_existence.return_value = False
    groups.create_or_update.return_value = SimpleNamespace(name='rg')

    services.ensure_resource_group()

    groups.create_or_update.assert_called_once_with('rg', {'location': 'eastus'})


# ==================== Storage account ====================

def test_storage_account_is_created_with_network_rules(services):
    accounts = services._storage_client.storage_accounts
    accounts.get_properties.side_effect = ResourceNotFoundError('not found')
    accounts.check_name_availability.return_value = SimpleNamespace(name_available=True)
    accounts.begin_create.return_value.result.return_value = SimpleNamespace(name='acct')

    services.ensure_storage_account(['1.2.3.4'])

    rg, name, parameters = accounts.begin_create.call_args[0]
    assert (rg, name) == ('rg', 'acct')
    assert parameters.kind == 'StorageV2'
    assert parameters.allow_blob_public_access is False
    rules = parameters.network_rule_set
    assert rules.default_action == 'Deny'
    assert rules.bypass == 'AzureServices'
    assert [r.ip_address_or_range for r in rules.ip_rules] == ['1.2.3.4']


def test_unavailable_storage_account_name_is_a_config_error(services):
    accounts = services._storage_client.storage_accounts
    accounts.get_properties.side_effect = ResourceNotFoundError('not found')
    accounts.check_name_availability.return_value = SimpleNamespace(
        name_available=False, reason='AlreadyExists', message='The storage account named acct is already taken.'
    )

    with pytest.raises(ValueError, match='already taken'):
        services.ensure_storage_account()
    accounts.begin_create.assert_not_called()


def test_existing_storage_account_gets_missing_ip_rules(services):
    accounts = services._storage_client.storage_accounts
    rule_set = SimpleNamespace(ip_rules=[SimpleNamespace(ip_address_or_range='1.1.1.1')])
    accounts.get_properties.return_value = SimpleNamespace(name='acct', network_rule_set=rule_set)

    services.ensure_storage_account(['1.1.1.1', '2.2.2.2'])

    accounts.begin_create.assert_not_called()
    update = accounts.update.call_args[0][2]
    assert [r.ip_address_or_range for r in update.network_rule_set.ip_rules] == ['1.1.1.1', '2.2.2.2']


def test_existing_storage_account_with_all_rules_is_untouched(services):
    accounts = services._storage_client.storage_accounts
    rule_set = SimpleNamespace(ip_rules=[SimpleNamespace(ip_address_or_range='1.1.1.1')])
    accounts.get_properties.return_value = SimpleNamespace(name='acct', network_rule_set=rule_set)

    services.ensure_storage_account(['1.1.1.1'])

    accounts.update.assert_not_called()


# ==================== Data factory ====================

def test_missing_factory_is_created_with_managed_identity(services):
    factories = services._adf_client.factories
    factories.get.side_effect = ResourceNotFoundError('not found')
    factories.create_or_update.return_value = SimpleNamespace(
        name='adf', identity=SimpleNamespace(principal_id='principal')
    )

    result = services.ensure_data_factory()

    assert result.identity.principal_id == 'principal'
    rg, name, factory = factories.create_or_update.call_args[0]
    assert (rg, name) == ('rg', 'adf')
    assert factory.location == 'eastus'
    assert factory.identity.type == 'SystemAssigned'


def test_existing_factory_with_identity_is_skipped(services):
    factories = services._adf_client.factories
    factories.get.return_value = SimpleNamespace(
        name='adf', location='westeurope', identity=SimpleNamespace(principal_id='principal')
    )

    services.ensure_data_factory()

    factories.create_or_update.assert_not_called()


def test_existing_factory_without_identity_is_patched_not_replaced(services):
    factories = services._adf_client.factories
    factories.get.return_value = SimpleNamespace(
        name='adf', location='westeurope', identity=None,
        repo_configuration='GIT', tags={'env': 'prod'},
    )
    factories.update.return_value = SimpleNamespace(
        name='adf', identity=SimpleNamespace(principal_id='principal')
    )

    result = services.ensure_data_factory()

    factories.create_or_update.assert_not_called()
    rg, name, parameters = factories.update.call_args[0]
    assert (rg, name) == ('rg', 'adf')
    assert parameters.identity.type == 'SystemAssigned'
    assert parameters.tags is None
    assert result.identity.principal_id == 'principal'


# ==================== Role assignment ====================

def test_existing_role_assignment_is_reused(services):
    assignments = services._auth_client.role_assignments
    existing = SimpleNamespace(role_definition_id=f'/subscriptions/sub/roleDefinitions/{STORAGE_BLOB_DATA_CONTRIBUTOR}')
    assignments.list_for_scope.return_value = [existing]

    assert services.ensure_storage_role_assignment('principal') is existing
    assignments.create.assert_not_called()


def test_role_assignment_retries_until_principal_replicates(services, monkeypatch):
    monkeypatch.setattr(azure_helpers.time, 'sleep', lambda seconds: None)
    assignments = services._auth_client.role_assignments
    assignments.list_for_scope.return_value = []
    created = SimpleNamespace(name='assignment')
    assignments.create.side_effect = [http_error('PrincipalNotFound: principal does not exist'), created]

    assert services.ensure_storage_role_assignment('principal') is created

    scope, _, parameters = assignments.create.call_args[0]
    assert scope.endswith('/providers/Microsoft.Storage/storageAccounts/acct')
    assert parameters.principal_id == 'principal'
    assert parameters.role_definition_id.endswith(STORAGE_BLOB_DATA_CONTRIBUTOR)


def test_role_assignment_gives_up_after_max_attempts(services, monkeypatch):
    monkeypatch.setattr(azure_helpers.time, 'sleep', lambda seconds: None)
    assignments = services._auth_client.role_assignments
    assignments.list_for_scope.return_value = []
    assignments.create.side_effect = http_error('PrincipalNotFound')

    with pytest.raises(HttpResponseError):
        services.ensure_storage_role_assignment('principal')
    assert assignments.create.call_count == 3


def test_provision_runs_every_step(services):
    services.ensure_resource_group = MagicMock()
    services.ensure_storage_account = MagicMock()
    services.ensure_data_factory = MagicMock(
        return_value=SimpleNamespace(identity=SimpleNamespace(principal_id='principal'))
    )
    services.ensure_storage_role_assignment = MagicMock()

    services.provision(['1.2.3.4'])

    services.ensure_storage_account.assert_called_once_with(['1.2.3.4'])
    services.ensure_storage_role_assignment.assert_called_once_with('principal')


# ==================== Containers ====================

def test_container_is_created_when_missing(services):
    container = services._blob_service_client.get_container_client.return_value
    container.get_container_properties.side_effect = ResourceNotFoundError('missing')

    assert services.ensure_container('orders') == 'created'
    container.create_container.assert_called_once_with()


def test_existing_container_is_skipped(services):
    container = services._blob_service_client.get_container_client.return_value

    assert services.ensure_container('orders') == 'exists'
    container.create_container.assert_not_called()


def test_container_creation_race_counts_as_existing(services):
    container = services._blob_service_client.get_container_client.return_value
    container.get_container_properties.side_effect = ResourceNotFoundError('missing')
    container.create_container.side_effect = ResourceExistsError('exists')

    assert services.ensure_container('orders') == 'exists'


def test_container_creation_waits_for_firewall(services, monkeypatch):
    monkeypatch.setattr(azure_helpers.time, 'sleep', lambda seconds: None)
    container = services._blob_service_client.get_container_client.return_value
    container.get_container_properties.side_effect = [
        http_error('AuthorizationFailure', status_code=403),
        ResourceNotFoundError('missing'),
    ]

    assert services.ensure_container('orders') == 'created'


def test_create_table_containers_reports_status(services):
    services.ensure_container = MagicMock(side_effect=['created', 'exists'])
    tables = [TableSpec('orders', container='orders'), TableSpec('items', container='items')]

    assert services.create_table_containers(tables) == {'orders': 'created', 'items': 'exists'}


def test_get_current_ip_falls_back_between_services(monkeypatch):
    calls = []

    class Response:
        def __init__(self, body):
            self.body = body

        def read(self):
            return self.body

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

    def fake_urlopen(url, timeout):
        calls.append(url)
        if 'ipify' in url:
            raise OSError('unreachable')
        return Response(b'5.6.7.8\n')

    monkeypatch.setattr(azure_helpers.urllib.request, 'urlopen', fake_urlopen)

    assert azure_helpers.get_current_ip() == (True, '5.6.7.8')
    assert len(calls) == 2
