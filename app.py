# app.py
"""
BigQuery to Azure Blob Storage - ADF deployment

Provisions the resource group, storage account and data factory, creates one
blob container per table listed in the tables CSV, then generates and deploys
one copy pipeline per table plus a master pipeline that runs them in sequence.

Usage:
    bq-adf-deploy --tables tables.csv
    bq-adf-deploy --tables tables.csv --dry-run --output-dir generated
"""

import argparse
import sys
import traceback

from azure_services.config import DeploymentConfig, SUPPORTED_FORMATS
from azure_services.azure_helpers import AzureServices, get_current_ip
from azure_services.deployer import PipelineDeployer
from azure_services.linked_services import DEFAULT_NAMES, LinkedServiceResolver
from pipelines.table_metadata import assign_container_names, read_table_metadata
from pipelines.templates import build_topology, generate_resource_names


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Provision Azure Data Factory pipelines that copy BigQuery tables to Blob Storage."
    )
    parser.add_argument('--tables', required=True, help="CSV file listing the BigQuery tables to copy")
    parser.add_argument('--resource-group', help="Overrides AZURE_RESOURCE_GROUP")
    parser.add_argument('--location', help="Overrides AZURE_LOCATION")
    parser.add_argument('--storage-account', help="Overrides AZURE_STORAGE_ACCOUNT_NAME")
    parser.add_argument('--factory', dest='factory_name', help="Overrides AZURE_DATA_FACTORY_NAME")
    parser.add_argument('--bigquery-project', help="Default project for rows without project_id")
    parser.add_argument('--bigquery-dataset', help="Default dataset for rows without dataset")
    parser.add_argument('--bigquery-linked-service', help="Preferred BigQuery linked service name")
    parser.add_argument('--blob-linked-service', help="Preferred Blob Storage linked service name")
    parser.add_argument('--default-format', choices=SUPPORTED_FORMATS,
                        help="Format for rows without one (default: parquet)")
    parser.add_argument('--container-prefix', help="Prefix for every container name")
    parser.add_argument('--output-dir', default='generated', help="Where generated JSON is written")
    parser.add_argument('--dry-run', action='store_true', help="Generate JSON only, no Azure calls")
    parser.add_argument('--skip-provision', action='store_true',
                        help="Assume resource group, storage account and factory exist")
    parser.add_argument('--no-detect-ip', action='store_true',
                        help="Do not add this machine's public IP to the storage firewall")
    parser.add_argument('--non-interactive', action='store_true', help="Never prompt")
    parser.add_argument('--continue-on-failure', action='store_true',
                        help="Keep running remaining tables when one copy fails")
    parser.add_argument('--run', action='store_true', help="Start the master pipeline after deployment")
    parser.add_argument('--monitor', action='store_true', help="Wait for the started run to finish")
    return parser.parse_args(argv)


def build_config(args):
    overrides = {
        'resource_group': args.resource_group,
        'location': args.location,
        'storage_account': args.storage_account,
        'factory_name': args.factory_name,
        'bigquery_project': args.bigquery_project,
        'bigquery_dataset': args.bigquery_dataset,
        'bigquery_linked_service': args.bigquery_linked_service,
        'blob_linked_service': args.blob_linked_service,
        'default_format': args.default_format,
        'container_prefix': args.container_prefix,
        'continue_on_failure': args.continue_on_failure,
    }
    return DeploymentConfig(overrides).validate(require_azure=not args.dry_run)


def allowed_ips(config, detect_ip=True):
    ips = list(config.allowed_ips)
    if detect_ip:
        ok, ip = get_current_ip()
        if ok and ip not in ips:
            print(f"Detected public IP: {ip}")
            ips.append(ip)
        elif not ok:
            print(f"⚠ {ip}; containers may not be reachable through the storage firewall")
    return ips


def load_tables(args, config):
    tables = read_table_metadata(
        args.tables,
        default_format=config.default_format,
        default_project=config.bigquery_project,
        default_dataset=config.bigquery_dataset,
    )
    assign_container_names(tables, config.container_prefix)
    print(f"✓ Loaded {len(tables)} tables from {args.tables}")
    return tables


def write_topology(topology, output_dir):
    written = topology.write(output_dir)
    print(f"✓ Wrote {len(written)} JSON definitions to {output_dir}")
    return written


def dry_run(args, config):
    """Generate the pipeline JSON without touching Azure"""
    tables = load_tables(args, config)
    linked_services = {
        'bigquery': config.bigquery_linked_service or DEFAULT_NAMES['bigquery'],
        'blob': config.blob_linked_service or DEFAULT_NAMES['blob'],
    }
    topology = build_topology(tables, linked_services, generate_resource_names(),
                              continue_on_failure=config.continue_on_failure)
    write_topology(topology, args.output_dir)
    return topology


def deploy_complete_solution(args, config, services=None, prompt=input):
    """Provision, create containers, resolve linked services, generate and deploy"""
    print("=" * 80)
    print("DEPLOYING BIGQUERY TO BLOB STORAGE PIPELINES")
    print("=" * 80)
    print()

    try:
        tables = load_tables(args, config)
        print()

        services = services or AzureServices(config)

        # Step 1: Infrastructure
        print("Step 1: Provisioning infrastructure")
        print("-" * 80)
        if args.skip_provision:
            print("Skipped (--skip-provision)")
        else:
            services.provision(allowed_ips(config, detect_ip=not args.no_detect_ip))
        print()

        # Step 2: Containers
        print("Step 2: Creating blob containers")
        print("-" * 80)
        containers = services.create_table_containers(tables)
        print()

        # Step 3: Linked services
        print("Step 3: Linked services")
        print("-" * 80)
        resolver = LinkedServiceResolver(
            services.adf_client, config.resource_group, config.factory_name, config,
            interactive=not args.non_interactive and sys.stdin.isatty(),
            prompt=prompt
        )
        linked_services = resolver.resolve_all(services.blob_endpoint)

        # Step 4: Generate
        print("Step 4: Generating pipeline definitions")
        print("-" * 80)
        names = generate_resource_names()
        topology = build_topology(tables, linked_services, names,
                                  continue_on_failure=config.continue_on_failure)
        write_topology(topology, args.output_dir)
        print()

        # Step 5: Deploy
        print("Step 5: Deploying to Data Factory")
        print("-" * 80)
        deployer = PipelineDeployer(services.adf_client, config.resource_group, config.factory_name)
        summary = deployer.deploy(topology)
        print()

        print("=" * 80)
        print("✓ DEPLOYMENT COMPLETED SUCCESSFULLY!")
        print("=" * 80)
        print()
        print("Resources:")
        print(f"  Containers: {len(containers)} "
              f"({sum(1 for s in containers.values() if s == 'created')} new)")
        print(f"  Definitions: {len(summary['created'])} created, {len(summary['updated'])} updated")
        print(f"  Master pipeline: {names['master_pipeline']}")
        for child in topology.children:
            print(f"    └── {child['name']}")
        print()

        if args.run or args.monitor:
            summary['run_id'] = deployer.run_pipeline(names['master_pipeline'])
            if args.monitor:
                summary['run_status'] = deployer.monitor_pipeline(summary['run_id'])

        return summary

    except Exception as e:
        print(f"✗ Deployment failed: {str(e)}")
        traceback.print_exc()
        raise


def exit_status(args, summary):
    """1 when a requested run did not start or did not succeed"""
    if not (args.run or args.monitor):
        return 0
    if summary.get('run_id') is None:
        return 1
    if args.monitor and summary.get('run_status') != 'Succeeded':
        return 1
    return 0


def main(argv=None):
    args = parse_args(argv)
    try:
        config = build_config(args)
    except ValueError as e:
        print(f"✗ {e}")
        return 2

    config.describe()

    if args.dry_run:
        try:
            dry_run(args, config)
        except (OSError, ValueError) as e:
            print(f"✗ {e}")
            return 1
        return 0

    try:
        summary = deploy_complete_solution(args, config)
    except Exception:
        return 1
    print("\nDeployment complete!")
    return exit_status(args, summary)


if __name__ == '__main__':
    sys.exit(main())
