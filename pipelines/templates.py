#!/usr/bin/env python3
"""
ADF JSON templates for the BigQuery to Blob Storage fan-out.

One child pipeline per table branches on the requested file format and copies
the table into its container as Parquet or JSON. A master pipeline runs every
child in sequence through Execute Pipeline activities.
"""

import json
import os
import re

# ADF service limits
MAX_ACTIVITIES_PER_PIPELINE = 80
MAX_PIPELINE_NAME_LENGTH = 140
MAX_ACTIVITY_NAME_LENGTH = 55

FORMAT_PARAMETER = 'fileFormat'
PIPELINE_FOLDER = 'BigQueryToBlob'

# Linked service type -> (dataset type, copy source type)
BIGQUERY_CONNECTORS = {
    'GoogleBigQuery': ('GoogleBigQueryObject', 'GoogleBigQuerySource'),
    'GoogleBigQueryV2': ('GoogleBigQueryV2Object', 'GoogleBigQueryV2Source'),
}
DEFAULT_BIGQUERY_TYPE = 'GoogleBigQuery'


def generate_resource_names(prefix='BigQueryToBlob'):
    """Names of the shared datasets and the master pipeline"""
    return {
        # Datasets
        'bigquery_dataset': f'{prefix}_BigQueryTable',
        'parquet_dataset': f'{prefix}_BlobParquet',
        'json_dataset': f'{prefix}_BlobJson',

        # Pipelines
        'master_pipeline': f'{prefix}_Master',
    }


def safe_pipeline_name(value):
    name = re.sub(r'[^A-Za-z0-9_]', '_', value)
    name = re.sub(r'_{2,}', '_', name).strip('_')
    return name[:MAX_PIPELINE_NAME_LENGTH]


def child_pipeline_name(table):
    return safe_pipeline_name(f"Copy_{table.dataset or ''}_{table.table_name}")


def assign_pipeline_names(tables):
    """Child pipeline name per table, with _2, _3, ... added on collisions"""
    used = set()
    result = []
    for table in tables:
        candidate = child_pipeline_name(table)
        name = candidate
        counter = 2
        while name in used:
            suffix = f"_{counter}"
            name = candidate[:MAX_PIPELINE_NAME_LENGTH - len(suffix)] + suffix
            counter += 1
        if name != candidate:
            print(f"⚠ Pipeline name '{candidate}' already used, '{table.qualified_name}' gets '{name}'")
        used.add(name)
        result.append(name)
    return result


def bigquery_connector(bigquery_type):
    """(dataset type, copy source type) for a BigQuery linked service type"""
    try:
        return BIGQUERY_CONNECTORS[bigquery_type]
    except KeyError:
        raise ValueError(
            f"Unsupported BigQuery linked service type '{bigquery_type}'. "
            f"Expected one of: {', '.join(BIGQUERY_CONNECTORS)}"
        ) from None


def _expression(value):
    return {'value': value, 'type': 'Expression'}


def _activity_policy():
    return {
        'timeout': '0.12:00:00',
        'retry': 0,
        'retryIntervalInSeconds': 30,
        'secureOutput': False,
        'secureInput': False,
    }


# ==================== Datasets ====================

def build_datasets(names, bigquery_linked_service, blob_linked_service, bigquery_type=DEFAULT_BIGQUERY_TYPE):
    """Shared parameterized datasets used by every child pipeline"""
    dataset_type, _ = bigquery_connector(bigquery_type)
    blob_parameters = {
        'container': {'type': 'String'},
        'folderPath': {'type': 'String', 'defaultValue': ''},
        'fileName': {'type': 'String'},
    }
    blob_location = {
        'type': 'AzureBlobStorageLocation',
        'container': _expression('@dataset().container'),
        'folderPath': _expression('@dataset().folderPath'),
        'fileName': _expression('@dataset().fileName'),
    }

    bigquery = {
        'name': names['bigquery_dataset'],
        'properties': {
            'linkedServiceName': {
                'referenceName': bigquery_linked_service,
                'type': 'LinkedServiceReference',
            },
            'parameters': {
                'dataset': {'type': 'String'},
                'table': {'type': 'String'},
            },
            'annotations': [],
            'type': dataset_type,
            'typeProperties': {
                'dataset': _expression('@dataset().dataset'),
                'table': _expression('@dataset().table'),
            },
        },
    }

    parquet = {
        'name': names['parquet_dataset'],
        'properties': {
            'linkedServiceName': {
                'referenceName': blob_linked_service,
                'type': 'LinkedServiceReference',
            },
            'parameters': dict(blob_parameters),
            'annotations': [],
            'type': 'Parquet',
            'typeProperties': {
                'location': dict(blob_location),
                'compressionCodec': 'snappy',
            },
        },
    }

    json_dataset = {
        'name': names['json_dataset'],
        'properties': {
            'linkedServiceName': {
                'referenceName': blob_linked_service,
                'type': 'LinkedServiceReference',
            },
            'parameters': dict(blob_parameters),
            'annotations': [],
            'type': 'Json',
            'typeProperties': {
                'location': dict(blob_location),
                'encodingName': 'UTF-8',
            },
        },
    }

    return [bigquery, parquet, json_dataset]


# ==================== Child pipelines ====================

def _copy_activity(name, table, names, file_format, source_type):
    if file_format == 'parquet':
        sink = {
            'type': 'ParquetSink',
            'storeSettings': {'type': 'AzureBlobStorageWriteSettings'},
            'formatSettings': {'type': 'ParquetWriteSettings'},
        }
        output_dataset = names['parquet_dataset']
    else:
        sink = {
            'type': 'JsonSink',
            'storeSettings': {'type': 'AzureBlobStorageWriteSettings'},
            'formatSettings': {'type': 'JsonWriteSettings', 'filePattern': 'setOfObjects'},
        }
        output_dataset = names['json_dataset']

    return {
        'name': name,
        'type': 'Copy',
        'dependsOn': [],
        'policy': _activity_policy(),
        'userProperties': [],
        'typeProperties': {
            'source': {
                'type': source_type,
                'query': table.source_query(),
            },
            'sink': sink,
            'enableStaging': False,
        },
        'inputs': [{
            'referenceName': names['bigquery_dataset'],
            'type': 'DatasetReference',
            'parameters': {
                'dataset': table.dataset or '',
                'table': table.table_name,
            },
        }],
        'outputs': [{
            'referenceName': output_dataset,
            'type': 'DatasetReference',
            'parameters': {
                'container': table.container,
                'folderPath': '',
                'fileName': f"{table.table_name}.{file_format}",
            },
        }],
    }


def build_child_pipeline(table, names, bigquery_type=DEFAULT_BIGQUERY_TYPE, name=None):
    """Copy one table, choosing the Parquet or JSON branch at run time"""
    _, source_type = bigquery_connector(bigquery_type)
    condition = f"@equals(toLower(pipeline().parameters.{FORMAT_PARAMETER}), 'parquet')"
    return {
        'name': name or child_pipeline_name(table),
        'properties': {
            'description': f"Copy BigQuery table {table.qualified_name} to container {table.container}",
            'activities': [{
                'name': 'IfParquetFormat',
                'type': 'IfCondition',
                'dependsOn': [],
                'userProperties': [],
                'typeProperties': {
                    'expression': _expression(condition),
                    'ifTrueActivities': [_copy_activity('CopyToParquet', table, names, 'parquet', source_type)],
                    'ifFalseActivities': [_copy_activity('CopyToJson', table, names, 'json', source_type)],
                },
            }],
            'parameters': {
                FORMAT_PARAMETER: {'type': 'String', 'defaultValue': table.file_format},
            },
            'folder': {'name': f'{PIPELINE_FOLDER}/Tables'},
            'annotations': [],
        },
    }


# ==================== Master pipeline ====================

def _execute_activities(targets, dependency_condition):
    """
    Chain Execute Pipeline activities one after another.
    targets: list of (pipeline_name, parameters)
    """
    activities = []
    previous = None
    for index, (pipeline_name, parameters) in enumerate(targets, start=1):
        name = f"Run_{index:03d}_{pipeline_name}"[:MAX_ACTIVITY_NAME_LENGTH]
        activity = {
            'name': name,
            'type': 'ExecutePipeline',
            'dependsOn': [],
            'userProperties': [],
            'typeProperties': {
                'pipeline': {'referenceName': pipeline_name, 'type': 'PipelineReference'},
                'waitOnCompletion': True,
                'parameters': parameters,
            },
        }
        if previous:
            activity['dependsOn'] = [{
                'activity': previous,
                'dependencyConditions': [dependency_condition],
            }]
        activities.append(activity)
        previous = name
    return activities


def _pipeline(name, description, activities, folder):
    return {
        'name': name,
        'properties': {
            'description': description,
            'activities': activities,
            'folder': {'name': folder},
            'annotations': [],
        },
    }


def build_master_pipelines(children, names, continue_on_failure=False):
    """
    Build the master pipeline plus any part pipelines it needs.

    children: list of (child_pipeline_name, file_format)
    Returns (part_pipelines, master_pipeline). Parts are only produced when
    there are more children than one pipeline can hold.
    """
    condition = 'Completed' if continue_on_failure else 'Succeeded'
    targets = [(name, {FORMAT_PARAMETER: file_format}) for name, file_format in children]
    master_name = names['master_pipeline']

    if len(targets) <= MAX_ACTIVITIES_PER_PIPELINE:
        master = _pipeline(
            master_name,
            f"Runs {len(targets)} table copy pipelines in sequence",
            _execute_activities(targets, condition),
            PIPELINE_FOLDER,
        )
        return [], master

    parts = []
    for start in range(0, len(targets), MAX_ACTIVITIES_PER_PIPELINE):
        chunk = targets[start:start + MAX_ACTIVITIES_PER_PIPELINE]
        part_name = f"{master_name}_Part{len(parts) + 1:02d}"
        parts.append(_pipeline(
            part_name,
            f"Runs table copy pipelines {start + 1}-{start + len(chunk)} in sequence",
            _execute_activities(chunk, condition),
            f'{PIPELINE_FOLDER}/Parts',
        ))

    master = _pipeline(
        master_name,
        f"Runs {len(targets)} table copy pipelines in {len(parts)} parts",
        _execute_activities([(part['name'], {}) for part in parts], condition),
        PIPELINE_FOLDER,
    )
    return parts, master


# ==================== Full topology ====================

class PipelineTopology:
    """All generated documents, in the order they must be deployed"""

    def __init__(self, datasets, children, parts, master):
        self.datasets = datasets
        self.children = children
        self.parts = parts
        self.master = master

    @property
    def pipelines(self):
        return self.children + self.parts + [self.master]

    def documents(self):
        """(kind, document) pairs in dependency order"""
        return [('dataset', d) for d in self.datasets] + [('pipeline', p) for p in self.pipelines]

    def write(self, output_dir):
        """Write each document to <output_dir>/<kind>/<name>.json"""
        written = []
        for kind, document in self.documents():
            folder = os.path.join(output_dir, kind)
            os.makedirs(folder, exist_ok=True)
            path = os.path.join(folder, f"{document['name']}.json")
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2)
            written.append(path)
        return written


def build_topology(tables, linked_services, names=None, continue_on_failure=False):
    """
    Generate datasets, one child pipeline per table and the master pipeline.

    linked_services: {'bigquery': name, 'blob': name}, plus an optional
    'bigquery_type' (GoogleBigQuery or GoogleBigQueryV2, default GoogleBigQuery)
    """
    names = names or generate_resource_names()
    bigquery_type = linked_services.get('bigquery_type') or DEFAULT_BIGQUERY_TYPE
    datasets = build_datasets(names, linked_services['bigquery'], linked_services['blob'], bigquery_type)

    for table in tables:
        if not table.container:
            raise ValueError(f"No container assigned for table '{table.qualified_name}'")

    children = [
        build_child_pipeline(table, names, bigquery_type, name=pipeline_name)
        for table, pipeline_name in zip(tables, assign_pipeline_names(tables))
    ]

    parts, master = build_master_pipelines(
        [(child['name'], table.file_format) for child, table in zip(children, tables)],
        names,
        continue_on_failure=continue_on_failure,
    )
    return PipelineTopology(datasets, children, parts, master)
