"""
Transfer Manifest

Design Decision: Manifest Structure
====================================

The manifest is the only handle needed to retrieve a file after upload.
It contains:
- Source identification (name, total length, fragment size)
- One receipt per uploaded fragment (fingerprint, transaction id)
- Creation time

Decision: JSON
- Easy to inspect and hand to another process
- Upload and download can run in separate invocations
- A bare JSON array of {index, fingerprint, transaction_id} records is
  accepted too, for manifests produced by other tools

Invariants:
- Receipts are index-aligned: receipts[i].fragment_index == i
- Receipts are appended, never replaced or removed
"""

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from ..integrity.fingerprint import Fingerprint


@dataclass(frozen=True)
class TransferReceipt:
    """Proof that one fragment was accepted by the storage network."""
    fragment_index: int
    fingerprint: Fingerprint
    transaction_id: str
    confirmed: bool = True
    offset: Optional[int] = None
    length: Optional[int] = None

    def to_dict(self) -> Dict:
        data = {
            'index': self.fragment_index,
            'fingerprint': self.fingerprint.hex,
            'transaction_id': self.transaction_id,
            'confirmed': self.confirmed,
        }
        if self.offset is not None:
            data['offset'] = self.offset
        if self.length is not None:
            data['length'] = self.length
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'TransferReceipt':
        return cls(
            fragment_index=int(data['index']),
            fingerprint=Fingerprint.from_hex(data['fingerprint']),
            transaction_id=str(data['transaction_id']),
            confirmed=bool(data.get('confirmed', True)),
            offset=data.get('offset'),
            length=data.get('length'),
        )


@dataclass
class TransferManifest:
    """
    Ordered receipts for every uploaded fragment of one source.

    Created empty before upload and filled one receipt at a time by the
    upload coordinator; read-only for download and verification.
    """
    source_name: str = ''
    total_length: int = 0
    fragment_size: int = 0
    receipts: List[TransferReceipt] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    def __len__(self) -> int:
        return len(self.receipts)

    def __iter__(self) -> Iterator[TransferReceipt]:
        return iter(self.receipts)

    def __getitem__(self, index: int) -> TransferReceipt:
        return self.receipts[index]

    @property
    def fragment_count(self) -> int:
        return len(self.receipts)

    @property
    def stored_length(self) -> Optional[int]:
        """Total bytes covered by the receipts, when lengths are known."""
        if any(r.length is None for r in self.receipts):
            return None
        return sum(r.length for r in self.receipts)

    def append(self, receipt: TransferReceipt):
        """Add the receipt for the next fragment in order."""
        expected = len(self.receipts)
        if receipt.fragment_index != expected:
            raise ValueError(
                f"Receipt for fragment {receipt.fragment_index} appended at "
                f"position {expected}"
            )
        self.receipts.append(receipt)

    def copy(self) -> 'TransferManifest':
        """Snapshot with its own receipt list."""
        return TransferManifest(
            source_name=self.source_name,
            total_length=self.total_length,
            fragment_size=self.fragment_size,
            receipts=list(self.receipts),
            created_at=self.created_at,
        )

    def to_dict(self) -> Dict:
        """Plain-dict form, receipts in index order."""
        return {
            'source_name': self.source_name,
            'total_length': self.total_length,
            'fragment_size': self.fragment_size,
            'created_at': self.created_at,
            'receipts': [r.to_dict() for r in self.receipts],
        }

    @classmethod
    def from_dict(cls, data: Union[Dict, List]) -> 'TransferManifest':
        """Deserialize from a manifest object or a bare receipt array."""
        if isinstance(data, list):
            records, meta = data, {}
        else:
            records, meta = data.get('receipts', []), data

        receipts = sorted(
            (TransferReceipt.from_dict(r) for r in records),
            key=lambda r: r.fragment_index,
        )
        for position, receipt in enumerate(receipts):
            if receipt.fragment_index != position:
                raise ValueError(
                    f"Manifest is missing the receipt for fragment {position}"
                )

        return cls(
            source_name=meta.get('source_name', ''),
            total_length=meta.get('total_length', 0),
            fragment_size=meta.get('fragment_size', 0),
            receipts=receipts,
            created_at=meta.get('created_at', time.time()),
        )

    def to_json(self, indent: int = None) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, json_str: str) -> 'TransferManifest':
        return cls.from_dict(json.loads(json_str))

    def save(self, path: Path):
        """Write as indented JSON, creating parent directories."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json(indent=2))

    @classmethod
    def load(cls, path: Path) -> 'TransferManifest':
        """Read a manifest or bare receipt array from disk."""
        return cls.from_json(Path(path).read_text())
