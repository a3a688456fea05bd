"""
Evidence ledger storage.

Dated snapshot directories with staging-then-publish commits, the "latest"
alias, integrity manifests, the single-writer run lock and the SQLite run
journal.
"""

from complyvault.storage.fileio import (
    atomic_write_json,
    atomic_write_text,
    compute_file_hash,
    dump_json,
    read_json,
    replace_tree,
    restore_tree,
    swap_tree,
    tree_files,
)
from complyvault.storage.journal import RunJournal
from complyvault.storage.ledger import (
    IntegrityError,
    LedgerCommitError,
    SnapshotLedger,
    SnapshotStage,
)
from complyvault.storage.lock import RunLock, RunLockError
from complyvault.storage.models import (
    BaselineEvent,
    RunRecord,
    SnapshotMetadata,
    date_key,
    iso_month_key,
    iso_week_key,
    parse_date_key,
)

__all__ = [
    "BaselineEvent",
    "IntegrityError",
    "LedgerCommitError",
    "RunJournal",
    "RunLock",
    "RunLockError",
    "RunRecord",
    "SnapshotLedger",
    "SnapshotMetadata",
    "SnapshotStage",
    "atomic_write_json",
    "atomic_write_text",
    "compute_file_hash",
    "date_key",
    "dump_json",
    "iso_month_key",
    "iso_week_key",
    "parse_date_key",
    "read_json",
    "replace_tree",
    "restore_tree",
    "swap_tree",
    "tree_files",
]
