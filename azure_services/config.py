# config.py
import os
import re
from dotenv import load_dotenv

from pipelines.table_metadata import SUPPORTED_FORMATS

load_dotenv()

# ==================== CONSTANTS ====================

DEFAULT_LOCATION = 'eastus'
DEFAULT_FORMAT = 'parquet'

STORAGE_ACCOUNT_PATTERN = re.compile(r'^[a-z0-9]{3,24}$')
FACTORY_NAME_PATTERN = re.compile(r'^[A-Za-z0-9](?:[A-Za-z0-9-]{1,61}[A-Za-z0-9])$')

REQUIRED_CREDENTIALS = (
    'AZURE_TENANT_ID',
    'AZURE_CLIENT_ID',
    'AZURE_CLIENT_SECRET',
    'AZURE_SUBSCRIPTION_ID',
)


def _split_list(value):
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


class DeploymentConfig:
    """Settings for one deployment run.

    Values come from environment variables (a .env file is loaded on import)
    and may be overridden by command line arguments.
    """

    def __init__(self, overrides=None):
        overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

        def pick(key, env_name, default=None):
            if key in overrides:
                return overrides[key]
            return os.getenv(env_name) or default

        # Service principal
        self.tenant_id = os.getenv('AZURE_TENANT_ID')
        self.client_id = os.getenv('AZURE_CLIENT_ID')
        self.client_secret = os.getenv('AZURE_CLIENT_SECRET')
        self.subscription_id = os.getenv('AZURE_SUBSCRIPTION_ID')

        # Infrastructure
        self.resource_group = pick('resource_group', 'AZURE_RESOURCE_GROUP')
        self.location = pick('location', 'AZURE_LOCATION', DEFAULT_LOCATION)
        self.storage_account = pick('storage_account', 'AZURE_STORAGE_ACCOUNT_NAME')
        self.factory_name = pick('factory_name', 'AZURE_DATA_FACTORY_NAME')
        self.allowed_ips = _split_list(pick('allowed_ips', 'AZURE_STORAGE_ALLOWED_IPS'))

        # BigQuery source
        self.bigquery_project = pick('bigquery_project', 'BIGQUERY_PROJECT_ID')
        self.bigquery_dataset = pick('bigquery_dataset', 'BIGQUERY_DATASET')
        self.bigquery_client_id = os.getenv('BIGQUERY_CLIENT_ID')
        self.bigquery_client_secret = os.getenv('BIGQUERY_CLIENT_SECRET')
        self.bigquery_refresh_token = os.getenv('BIGQUERY_REFRESH_TOKEN')

        # Linked service preferences
        self.bigquery_linked_service = pick('bigquery_linked_service', 'ADF_BIGQUERY_LINKED_SERVICE')
        self.blob_linked_service = pick('blob_linked_service', 'ADF_BLOB_LINKED_SERVICE')

        # Generation options
        self.default_format = pick('default_format', 'ADF_DEFAULT_FORMAT', DEFAULT_FORMAT).lower()
        self.container_prefix = pick('container_prefix', 'ADF_CONTAINER_PREFIX', '')
        self.continue_on_failure = bool(overrides.get('continue_on_failure', False))

    def missing_credentials(self):
        values = {
            'AZURE_TENANT_ID': self.tenant_id,
            'AZURE_CLIENT_ID': self.client_id,
            'AZURE_CLIENT_SECRET': self.client_secret,
            'AZURE_SUBSCRIPTION_ID': self.subscription_id,
        }
        return [name for name in REQUIRED_CREDENTIALS if not values[name]]

    def has_bigquery_credentials(self):
        return all([self.bigquery_client_id, self.bigquery_client_secret, self.bigquery_refresh_token])

    def validate(self, require_azure=True):
        """Raise ValueError listing every problem found."""
        problems = []

        if self.default_format not in SUPPORTED_FORMATS:
            problems.append(
                f"Unsupported default format '{self.default_format}'. "
                f"Expected one of: {', '.join(SUPPORTED_FORMATS)}"
            )

        if require_azure:
            missing = self.missing_credentials()
            if missing:
                problems.append(f"Missing required Azure credentials: {', '.join(missing)}")

            required = {
                'AZURE_RESOURCE_GROUP': self.resource_group,
                'AZURE_STORAGE_ACCOUNT_NAME': self.storage_account,
                'AZURE_DATA_FACTORY_NAME': self.factory_name,
            }
            missing_vars = [var for var, value in required.items() if not value]
            if missing_vars:
                problems.append(f"Missing required configuration: {', '.join(missing_vars)}")

        if self.storage_account and not STORAGE_ACCOUNT_PATTERN.match(self.storage_account):
            problems.append(
                f"Invalid storage account name '{self.storage_account}': "
                "use 3-24 lowercase letters and digits"
            )
        if self.factory_name and not FACTORY_NAME_PATTERN.match(self.factory_name):
            problems.append(
                f"Invalid Data Factory name '{self.factory_name}': use 3-63 letters, digits "
                "and hyphens, starting and ending with a letter or digit"
            )

        if problems:
            raise ValueError("; ".join(problems))
        return self

    def describe(self):
        """Print the effective configuration (secrets masked)"""
        print("Configuration:")
        print(f"  Subscription ID: {self.subscription_id}")
        print(f"  Resource Group: {self.resource_group}")
        print(f"  Location: {self.location}")
        print(f"  Storage Account: {self.storage_account}")
        print(f"  Data Factory: {self.factory_name}")
        print(f"  BigQuery Project: {self.bigquery_project or '(per table)'}")
        print(f"  BigQuery Dataset: {self.bigquery_dataset or '(per table)'}")
        print(f"  Default Format: {self.default_format}")
        print(f"  Client Secret: {'***' if self.client_secret else None}")
        print()
