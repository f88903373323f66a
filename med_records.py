# med_records.py
# Persisted medication record and the form's editable draft.
#
# The draft is mutable and may be half filled; a record is only built
# from it on submit.

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from med_errors import ValidationRejected


class Frequency(str, Enum):
    DAILY = "daily"
    LIMITED = "limited"

    @property
    def label(self) -> str:
        return FREQUENCY_LABELS[self]


FREQUENCY_LABELS = {
    Frequency.DAILY: "Daily, ongoing",
    Frequency.LIMITED: "Limited or with pauses",
}

# Required before a draft can be submitted (checked by the controller only)
REQUIRED_FIELDS = ("name", "start_date", "time")

DRAFT_FIELDS = ("name", "start_date", "time", "frequency", "end_date", "description")


@dataclass(frozen=True)
class MedicationRecord:
    """One medication entry as stored.

    id == 0 means not persisted yet; the store assigns the real id.
    Dates ("DD/MM/YYYY") and time ("HH:MM") are free text.
    """
    name: str
    start_date: str
    time: str
    frequency: Frequency = Frequency.DAILY
    end_date: str = ""
    description: str = ""
    id: int = 0

    def __post_init__(self):
        # accepts the raw tag from sqlite or the form
        object.__setattr__(self, "frequency", Frequency(self.frequency))
        object.__setattr__(self, "id", int(self.id))

    @property
    def is_persisted(self) -> bool:
        return self.id != 0

    @property
    def frequency_label(self) -> str:
        return self.frequency.label

    def summary(self) -> str:
        return f"{self.time} • {self.frequency_label}"

    def with_id(self, record_id: int) -> "MedicationRecord":
        return replace(self, id=int(record_id))

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id or None,
            "name": self.name,
            "start_date": self.start_date,
            "time": self.time,
            "frequency": self.frequency.value,
            "end_date": self.end_date,
            "description": self.description,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MedicationRecord":
        return cls(
            id=row["id"],
            name=row["name"],
            start_date=row["start_date"],
            time=row["time"],
            frequency=row["frequency"],
            end_date=row["end_date"] or "",
            description=row["description"] or "",
        )


@dataclass
class MedicationDraft:
    name: str = ""
    start_date: str = ""
    time: str = ""
    frequency: Frequency = Frequency.DAILY
    end_date: str = ""
    description: str = ""

    def __setattr__(self, key, value):
        if key == "frequency":
            value = Frequency(value)
        elif key in DRAFT_FIELDS:
            value = "" if value is None else str(value)
        object.__setattr__(self, key, value)

    @classmethod
    def from_record(cls, record: Optional[MedicationRecord]) -> "MedicationDraft":
        if record is None:
            return cls()
        return cls(
            name=record.name,
            start_date=record.start_date,
            time=record.time,
            frequency=record.frequency,
            end_date=record.end_date,
            description=record.description,
        )

    def update(self, **values) -> "MedicationDraft":
        unknown = set(values) - set(DRAFT_FIELDS)
        if unknown:
            raise TypeError(f"unknown draft fields: {', '.join(sorted(unknown))}")
        for k, v in values.items():
            setattr(self, k, v)
        return self

    def missing_fields(self) -> List[str]:
        return [f for f in REQUIRED_FIELDS if not getattr(self, f).strip()]

    def is_valid(self) -> bool:
        return not self.missing_fields()

    def validate(self):
        missing = self.missing_fields()
        if missing:
            raise ValidationRejected(missing)

    def to_record(self, record_id: int = 0) -> MedicationRecord:
        """Build the record to persist; raises ValidationRejected if incomplete."""
        self.validate()
        return MedicationRecord(
            id=record_id,
            name=self.name.strip(),
            start_date=self.start_date.strip(),
            time=self.time.strip(),
            frequency=self.frequency,
            end_date=self.end_date.strip(),
            description=self.description.strip(),
        )
