"""Domain records shared by the mapper, the publishers and the orchestrator."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .dicom_values import is_dicom_date, is_dicom_time
from .errors import MappingError

DEFAULT_STATUSES: Tuple[str, ...] = ("IN_REQUEST", "SCHEDULED")


@dataclass(frozen=True)
class Order:
    """A requested imaging procedure as stored in the RIS."""

    order_id: str
    accession_number: Optional[str]
    status: str
    order_number: Optional[str] = None
    study_id: Optional[str] = None
    modality_code: Optional[str] = None
    payer_type: Optional[str] = None
    priority: Optional[str] = None
    schedule_date: Optional[datetime] = None
    ae_title: Optional[str] = None
    diagnosis_code: Optional[str] = None
    diagnosis_display: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Patient:
    patient_id: str
    mrn: Optional[str]
    name: Optional[str]
    birth_date: Optional[date]
    sex: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class Practitioner:
    practitioner_id: str
    name: str
    role: Optional[str] = None


@dataclass(frozen=True)
class Modality:
    code: str
    name: Optional[str] = None
    ae_titles: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProcedureCode:
    code: str
    display: Optional[str] = None
    system: str = "LN"


@dataclass(frozen=True)
class OrderDetail:
    """An order joined with everything the mapper reads."""

    order: Order
    patient: Patient
    modality: Modality
    requester: Optional[Practitioner] = None
    performer: Optional[Practitioner] = None
    procedure: Optional[ProcedureCode] = None


@dataclass(frozen=True)
class OrderFilter:
    """Selection criteria for a sync run."""

    order_id: Optional[str] = None
    accession_number: Optional[str] = None
    statuses: Tuple[str, ...] = DEFAULT_STATUSES
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    limit: int = 10


@dataclass(frozen=True)
class WorklistItem:
    """Canonical, backend-agnostic Modality Worklist item.

    Date and time fields must already be DICOM encoded; construction fails
    with ``MappingError`` otherwise.
    """

    patient_id: str
    patient_name: str
    patient_birth_date: str
    patient_sex: str
    accession_number: str
    requested_procedure_description: str
    scheduled_procedure_step_description: str
    scheduled_station_ae_title: str
    modality: str
    scheduled_procedure_step_start_date: str
    scheduled_procedure_step_start_time: str
    scheduled_performing_physician_name: Optional[str] = None
    referring_physician_name: Optional[str] = None
    scheduled_procedure_step_id: Optional[str] = None
    requested_procedure_id: Optional[str] = None
    requested_procedure_code: Optional[str] = None
    requested_procedure_code_meaning: Optional[str] = None
    diagnosis_code: Optional[str] = None
    diagnosis_display: Optional[str] = None
    payer_type: Optional[str] = None
    priority: Optional[str] = None
    patient_address: Optional[str] = None
    patient_phone: Optional[str] = None
    study_instance_uid: Optional[str] = None

    def __post_init__(self):
        if not self.accession_number:
            raise MappingError("Worklist item requires an accession number")
        if not is_dicom_date(self.patient_birth_date):
            raise MappingError(f"Invalid PatientBirthDate: {self.patient_birth_date!r}")
        if not is_dicom_date(self.scheduled_procedure_step_start_date):
            raise MappingError(
                f"Invalid ScheduledProcedureStepStartDate: {self.scheduled_procedure_step_start_date!r}"
            )
        if not is_dicom_time(self.scheduled_procedure_step_start_time):
            raise MappingError(
                f"Invalid ScheduledProcedureStepStartTime: {self.scheduled_procedure_step_start_time!r}"
            )
        if self.patient_sex not in ("M", "F", "O"):
            raise MappingError(f"Invalid PatientSex: {self.patient_sex!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class PublishResult:
    """Outcome of publishing one order to one backend."""

    order_id: str
    accession_number: str
    backend: str
    success: bool
    external_study_id: Optional[str] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    note: Optional[str] = None
    attempts: int = 1


@dataclass(frozen=True)
class StudyRef:
    """A study (or worklist-backing study) as known by a backend."""

    backend: str
    study_id: str
    study_instance_uid: Optional[str] = None
    accession_number: Optional[str] = None
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    study_date: Optional[str] = None
    study_description: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncOutcome(str, Enum):
    PUBLISHED = "PUBLISHED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass
class OrderSyncResult:
    """Terminal state of one order within a sync run."""

    order_id: str
    accession_number: str
    outcome: SyncOutcome
    reason: Optional[str] = None
    error_type: Optional[str] = None
    publish_results: List[PublishResult] = field(default_factory=list)
    item: Optional[WorklistItem] = None
    written_study_id: Optional[str] = None
