"""Content-addressed on-disk memo of FitResults.

Entries are keyed by the ModelSpec fingerprint, dataset fingerprint and the
estimation options that affect the numbers (seed included). Payloads are
written to a temporary file and moved into place, so concurrent writers of the
same key leave one complete entry behind.
"""

from __future__ import annotations

import hashlib
import json
import os
import pickle
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

from ..config import DEFAULT_CACHE_ROOT
from ..data.dataset import PayrollDataset
from ..modeling.spec import ModelSpec
from .options import FitOptions
from .results import FitResult

METADATA_SUFFIX = ".meta.json"
PAYLOAD_SUFFIX = ".pkl"


def cache_key(spec: ModelSpec, dataset: PayrollDataset, options: FitOptions) -> str:
    payload = {
        "spec": spec.fingerprint,
        "dataset": dataset.fingerprint,
        "options": options.cache_payload(),
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def atomic_write(path: Path, data: bytes) -> None:
    """Write bytes next to ``path`` and rename over it in one step."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(delete=False, dir=path.parent, suffix=".tmp") as tmp:
        tmp.write(data)
    os.replace(tmp.name, path)


def read_metadata(path: Path) -> Mapping[str, Any]:
    """Load metadata JSON attached to a payload, returning an empty mapping on failure."""
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError:
        return {}


class FitCache:
    """Write-once, read-many store for fitted models."""

    def __init__(self, root: Path = DEFAULT_CACHE_ROOT) -> None:
        self.root = Path(root)

    def _paths(self, key: str) -> tuple[Path, Path]:
        base = self.root / key[:2]
        return base / f"{key}{PAYLOAD_SUFFIX}", base / f"{key}{METADATA_SUFFIX}"

    def contains(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> Optional[FitResult]:
        """Return the cached result, or None when missing or not matching its metadata."""
        payload_path, meta_path = self._paths(key)
        if not payload_path.exists():
            return None
        metadata = read_metadata(meta_path)
        data = payload_path.read_bytes()
        if metadata.get("sha256") != sha256_bytes(data):
            return None
        result = pickle.loads(data)
        if not isinstance(result, FitResult):
            return None
        return result

    def put(self, key: str, result: FitResult) -> Path:
        payload_path, meta_path = self._paths(key)
        data = pickle.dumps(result, protocol=pickle.HIGHEST_PROTOCOL)
        atomic_write(payload_path, data)
        metadata = {
            "key": key,
            "model": result.model,
            "method": result.method,
            "dataset": result.dataset_fingerprint,
            "sha256": sha256_bytes(data),
            "written_at": datetime.now(timezone.utc).isoformat(),
        }
        atomic_write(meta_path, json.dumps(metadata, indent=2, sort_keys=True).encode())
        return payload_path

    def clear(self) -> None:
        """Remove every cached entry."""
        if not self.root.exists():
            return
        for path in self.root.rglob("*"):
            if path.is_file() and path.name.endswith((PAYLOAD_SUFFIX, METADATA_SUFFIX)):
                path.unlink()


__all__ = ["FitCache", "atomic_write", "cache_key", "read_metadata"]
