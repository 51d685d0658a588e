"""
Data model shared by the store, the extractor and the sync controller.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

Number = Union[int, float]


class Partition(str, Enum):
    """Logical store partition. The value is the sqlite table name."""
    SYNCED = 'settlements'
    MANUAL = 'manual_settlements'

    @classmethod
    def parse(cls, value) -> 'Partition':
        """Accept a Partition, its table name, or the short names 'synced' / 'manual'."""
        if isinstance(value, cls):
            return value
        text = str(value or '').strip().lower()
        aliases = {'synced': cls.SYNCED, 'sync': cls.SYNCED,
                   'manual': cls.MANUAL, 'upload': cls.MANUAL}
        if text in aliases:
            return aliases[text]
        return cls(text)


@dataclass
class SettlementRecord:
    """One settlement line: what a title earned in a settlement month."""
    period_key: str                 # Canonical 'YYYY.MM'
    title: str
    amount: Number                  # Currency units
    id: Optional[int] = field(default=None, compare=False)  # Assigned by the store

    def to_dict(self) -> dict:
        return {
            'periodKey': self.period_key,
            'title': self.title,
            'amount': self.amount,
        }
