"""Input records, categorical indexing and array datasets."""

from .dataset import PayrollDataset, Scaling, build_dataset, standardize
from .indexing import GroupIndex
from .loader import TableSource, load_records, read_table, records_from_rows
from .records import CompensationRecord

__all__ = [
    "CompensationRecord",
    "GroupIndex",
    "PayrollDataset",
    "Scaling",
    "TableSource",
    "build_dataset",
    "load_records",
    "read_table",
    "records_from_rows",
    "standardize",
]
