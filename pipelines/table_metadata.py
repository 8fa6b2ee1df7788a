# table_metadata.py
"""
Table metadata for the BigQuery to Blob Storage pipelines.
Reads the tables CSV and derives one valid blob container name per table.
"""

import csv
import re
from io import StringIO

import pandas as pd

SUPPORTED_FORMATS = ('json', 'parquet')

MIN_CONTAINER_LENGTH = 3
MAX_CONTAINER_LENGTH = 63

# Accepted header spellings -> canonical column
COLUMN_ALIASES = {
    'table_name': 'table_name',
    'table': 'table_name',
    'tablename': 'table_name',
    'dataset': 'dataset',
    'dataset_name': 'dataset',
    'project_id': 'project_id',
    'project': 'project_id',
    'format': 'format',
    'file_format': 'format',
    'query': 'query',
    'container': 'container',
}


class TableSpec:
    """One BigQuery table to copy"""

    def __init__(self, table_name, dataset=None, project_id=None, file_format='parquet',
                 query=None, container=None):
        self.table_name = table_name
        self.dataset = dataset
        self.project_id = project_id
        self.file_format = file_format
        self.query = query
        self.container = container

    @property
    def qualified_name(self):
        parts = [p for p in (self.project_id, self.dataset, self.table_name) if p]
        return '.'.join(parts)

    def source_query(self):
        if self.query:
            return self.query
        return f"SELECT * FROM `{self.qualified_name}`"

    def __eq__(self, other):
        return isinstance(other, TableSpec) and vars(self) == vars(other)

    def __repr__(self):
        return f"TableSpec({self.qualified_name!r}, format={self.file_format!r}, container={self.container!r})"


# ==================== CONTAINER NAMES ====================

def sanitize_container_name(name, prefix=''):
    """
    Turn an arbitrary table name into a valid blob container name:
    3-63 characters of lowercase letters, digits and single hyphens,
    starting and ending with a letter or digit.
    """
    def clean(value):
        value = re.sub(r'[^a-z0-9-]', '-', str(value).lower())
        value = re.sub(r'-{2,}', '-', value)
        return value.strip('-')

    base = clean(name)
    if not base:
        raise ValueError(f"Cannot derive a container name from '{name}'")

    prefix = clean(prefix) if prefix else ''
    result = f"{prefix}-{base}" if prefix else base

    if len(result) < MIN_CONTAINER_LENGTH:
        result = result.ljust(MIN_CONTAINER_LENGTH, '0')

    return result[:MAX_CONTAINER_LENGTH].rstrip('-')


def _with_suffix(name, counter):
    suffix = f"-{counter}"
    return name[:MAX_CONTAINER_LENGTH - len(suffix)].rstrip('-') + suffix


def assign_container_names(tables, prefix=''):
    """Fill in container names, making names unique across tables"""
    used = set()
    for table in tables:
        candidate = sanitize_container_name(table.container or table.table_name, prefix)
        name = candidate
        counter = 2
        while name in used:
            name = _with_suffix(candidate, counter)
            counter += 1
        if name != candidate:
            print(f"⚠ Container name '{candidate}' already used, '{table.qualified_name}' gets '{name}'")
        used.add(name)
        table.container = name
    return tables


# ==================== CSV READING ====================

def _read_csv_text(raw):
    """Decode and parse CSV bytes, trying several encodings and separators"""
    decode_attempts = ['utf-8-sig', 'utf-8', 'latin-1']
    sep_attempts = [',', ';', '\t', None]  # None enables auto-detect with python engine

    last_error = None
    for enc in decode_attempts:
        try:
            text = raw.decode(enc)
        except UnicodeDecodeError as e:
            last_error = e
            continue

        for sep in sep_attempts:
            try:
                # Blank lines are kept as empty rows so row positions match file lines
                df = pd.read_csv(StringIO(text), sep=sep, engine='python', dtype=str,
                                 skip_blank_lines=False)
            except (csv.Error, pd.errors.ParserError, pd.errors.EmptyDataError, ValueError) as e:
                last_error = e
                continue

            columns = [str(c).strip().lower() for c in df.columns]
            if any(COLUMN_ALIASES.get(c) == 'table_name' for c in columns):
                df.columns = columns
                return df

    raise ValueError(f"Could not read tables CSV: {last_error or 'no table_name column found'}")


def _cell(row, column):
    value = row.get(column)
    if value is None or pd.isna(value):
        return None
    value = str(value).strip()
    return value or None


def read_table_metadata(path, default_format='parquet', default_project=None, default_dataset=None):
    """Read the tables CSV and return a list of TableSpec"""
    with open(path, 'rb') as f:
        raw = f.read()
    if not raw.strip():
        raise ValueError(f"Tables CSV is empty: {path}")

    df = _read_csv_text(raw)
    df = df.rename(columns={c: COLUMN_ALIASES[c] for c in df.columns if c in COLUMN_ALIASES})
    df = df.loc[:, ~df.columns.duplicated()]

    tables = []
    seen = set()
    for index, row in df.iterrows():
        # Header is line 1
        line = index + 2
        table_name = _cell(row, 'table_name')
        if not table_name:
            if any(_cell(row, c) for c in df.columns):
                print(f"⚠ Skipping line {line}: empty table name")
            continue

        file_format = (_cell(row, 'format') or default_format).lower()
        if file_format not in SUPPORTED_FORMATS:
            raise ValueError(
                f"Line {line}: unsupported format '{file_format}' for table '{table_name}'. "
                f"Expected one of: {', '.join(SUPPORTED_FORMATS)}"
            )

        table = TableSpec(
            table_name=table_name,
            dataset=_cell(row, 'dataset') or default_dataset,
            project_id=_cell(row, 'project_id') or default_project,
            file_format=file_format,
            query=_cell(row, 'query'),
            container=_cell(row, 'container'),
        )

        key = (table.project_id, table.dataset, table.table_name)
        if key in seen:
            print(f"⚠ Skipping line {line}: duplicate table '{table.qualified_name}'")
            continue
        seen.add(key)
        tables.append(table)

    if not tables:
        raise ValueError(f"No tables found in {path}")
    return tables
