"""Artifact storage for rendered invoice documents and reconciliation reports.

Every stored artifact is addressed by a DataReference carrying its sha256,
so a finalized invoice can be verified against the bytes it points at.
"""

import hashlib
import json
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Union

from core.models.refs import DataReference, ReconciliationReport


def _compute_sha256(data: bytes) -> str:
    """Compute SHA256 hash of bytes."""
    return hashlib.sha256(data).hexdigest()


def _safe_name(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", value).strip("_") or "artifact"


def put_binary(data: bytes, path: Path, content_type: str = "application/octet-stream",
               ensure_parent: bool = True) -> DataReference:
    """Store bytes at ``path`` and return a DataReference for them."""
    if ensure_parent:
        path.parent.mkdir(parents=True, exist_ok=True)

    path.write_bytes(data)

    return DataReference(
        storage_uri=str(path.absolute()),
        content_hash=_compute_sha256(data),
        content_type=content_type,
        size_bytes=len(data),
        stored_at=datetime.utcnow(),
    )


def put_json(obj: Any, path: Path, ensure_parent: bool = True) -> DataReference:
    """Store a JSON-serializable object (dict or pydantic model)."""
    if hasattr(obj, "model_dump"):
        obj = obj.model_dump(mode="json")
    data = json.dumps(obj, indent=2, default=str).encode("utf-8")
    return put_binary(data, path, content_type="application/json", ensure_parent=ensure_parent)


def get_binary(ref: DataReference, validate_hash: bool = True) -> bytes:
    """Read the bytes behind a DataReference.

    Raises:
        FileNotFoundError: If artifact path doesn't exist
        ValueError: If hash validation fails
    """
    path = Path(ref.storage_uri)

    if not path.exists():
        raise FileNotFoundError(f"Artifact not found: {ref.storage_uri}")

    data = path.read_bytes()

    if validate_hash:
        actual_hash = _compute_sha256(data)
        if actual_hash != ref.content_hash:
            raise ValueError(
                f"Hash mismatch for {ref.storage_uri}: "
                f"expected {ref.content_hash}, got {actual_hash}"
            )

    return data


def get_json(ref: DataReference, validate_hash: bool = True) -> dict:
    return json.loads(get_binary(ref, validate_hash).decode("utf-8"))


class ArtifactStore:
    """Artifact store rooted at the configured artifacts directory.

    Layout:
        invoices/<client_id>/<invoice_number>.<ext>
        reports/<scope>-<timestamp>.json
    """

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)

    def put_invoice_document(
        self,
        client_id: str,
        invoice_number: str,
        data: bytes,
        content_type: str,
        file_extension: str,
    ) -> DataReference:
        """Store a rendered invoice document."""
        path = (
            self.base_path / "invoices" / _safe_name(client_id)
            / f"{_safe_name(invoice_number)}.{file_extension.lstrip('.')}"
        )
        if path.exists():
            # Finalized documents are write-once
            raise FileExistsError(f"Invoice document already stored: {path}")
        return put_binary(data, path, content_type)

    def put_report(self, report: ReconciliationReport) -> DataReference:
        """Store a reconciliation report as JSON."""
        stamp = report.generated_at.strftime("%Y%m%dT%H%M%S%f")
        path = self.base_path / "reports" / f"{_safe_name(report.scope)}-{stamp}.json"
        return put_json(report, path)

    def get_binary(self, ref: DataReference, validate_hash: bool = True) -> bytes:
        return get_binary(ref, validate_hash)

    def get_json(self, ref: DataReference, validate_hash: bool = True) -> dict:
        return get_json(ref, validate_hash)
