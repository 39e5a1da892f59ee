"""
Replacement records and the pending replacement map.

A replacement record describes one file operation the patch engine could not
complete because the destination was locked. The pending replacement map
accumulates those records across a whole patch chain so the self-updater can
finish them after the application exits.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterator, Optional, assert_never


class OperationType(Enum):
    REMOVE = "remove"
    REPLACE = "replace"
    PATCH = "patch"
    FORCE = "force"
    NEW = "new"


@dataclass(frozen=True)
class ReplacementRecord:
    """
    One pending file operation.

    Empty strings mean "not applicable": a record with only `destination`
    set asks for that folder to be created.
    """

    operation: OperationType
    destination: str
    new_file: str = ""
    backup_file: str = ""


class PendingReplacementMap:
    """
    Maps each ultimate destination to the latest staged content for it.

    At most one entry exists per destination. When a later patch reports a
    record whose destination is the staged path of an earlier entry, the
    earlier entry is retargeted instead of a second entry being added.
    """

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}
        self._records: dict[str, ReplacementRecord] = {}

    def find_key(self, path: str) -> Optional[str]:
        """Return the destination whose pending content currently is `path`."""
        for key, value in self._entries.items():
            if value == path:
                return key
        return None

    def merge(self, record: ReplacementRecord) -> str:
        """
        Merge one record reported by a patch step.

        :param record: the record the patch engine could not complete
        :return: the canonical destination the record was filed under
        """
        key = self.find_key(record.destination) or record.destination

        match record.operation:
            case OperationType.REMOVE:
                self._entries[key] = record.backup_file
            case OperationType.REPLACE | OperationType.PATCH | OperationType.FORCE:
                self._entries[key] = record.new_file
            case OperationType.NEW:
                if record.new_file and record.destination:
                    self._entries[key] = record.new_file
            case _:
                assert_never(record.operation)

        previous = self._records.get(key)
        # The first backup of a destination holds its original content
        backup_file = (
            previous.backup_file
            if previous is not None and previous.backup_file
            else record.backup_file
        )
        self._records[key] = replace(
            record, destination=key, backup_file=backup_file
        )
        return key

    def resolve(self, destination: str) -> str:
        """Where an operation on `destination` has to be performed now."""
        return self._entries.get(destination, destination)

    def get(self, destination: str) -> Optional[str]:
        return self._entries.get(destination)

    def records(self) -> list[ReplacementRecord]:
        """Outstanding operations, one per destination, in first-seen order."""
        return list(self._records.values())

    def as_dict(self) -> dict[str, str]:
        return dict(self._entries)

    def __contains__(self, destination: object) -> bool:
        return destination in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)
