"""
The ``WorklistPublisher`` capability.

Both PACS adapters implement this interface so the orchestrator never has to
know which backend it is talking to.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import (
    AuthError,
    BackendConnectionError,
    BackendError,
    ConflictError,
    MappingError,
    ValidationError,
)
from .models import PublishResult, StudyRef, WorklistItem

ORTHANC = "orthanc"
DCM4CHEE = "dcm4chee"
BOTH = "both"
BACKENDS = (ORTHANC, DCM4CHEE)

ALREADY_PRESENT = "already present"


def error_for_status(backend: str, status_code: int, body: str, action: str) -> BackendError:
    """Translate a non-2xx HTTP response into the engine's error taxonomy."""
    message = f"{backend}: {action} failed"
    if status_code in (401, 403):
        return AuthError(f"{message}, credentials rejected", backend, status_code, body)
    if status_code in (400, 422):
        return ValidationError(f"{message}, payload rejected", backend, status_code, body)
    if status_code == 409:
        return ConflictError(f"{message}, item already exists", backend, status_code, body)
    if status_code in (408, 429) or status_code >= 500:
        return BackendConnectionError(f"{message}, server unavailable", backend, status_code, body)
    return BackendError(message, backend, status_code, body)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def item_from_tags(tags: Dict[str, Any], backend: str = "") -> WorklistItem:
    """Rebuild a WorklistItem from keyword-addressed DICOM attributes.

    Raises:
        BackendError: If the stored attributes do not form a valid item
    """
    steps = tags.get("ScheduledProcedureStepSequence") or [{}]
    step = steps[0] if isinstance(steps, list) else steps
    try:
        return WorklistItem(
            patient_id=_text(tags.get("PatientID")) or "",
            patient_name=_text(tags.get("PatientName")) or "",
            patient_birth_date=_text(tags.get("PatientBirthDate")) or "",
            patient_sex=_text(tags.get("PatientSex")) or "O",
            accession_number=_text(tags.get("AccessionNumber")) or "",
            requested_procedure_description=_text(tags.get("RequestedProcedureDescription")) or "",
            scheduled_procedure_step_description=_text(step.get("ScheduledProcedureStepDescription")) or "",
            scheduled_station_ae_title=_text(step.get("ScheduledStationAETitle")) or "",
            modality=_text(step.get("Modality")) or "",
            scheduled_procedure_step_start_date=_text(step.get("ScheduledProcedureStepStartDate")) or "",
            scheduled_procedure_step_start_time=(_text(step.get("ScheduledProcedureStepStartTime")) or "")[:6],
            scheduled_performing_physician_name=_text(step.get("ScheduledPerformingPhysicianName")),
            referring_physician_name=_text(tags.get("ReferringPhysicianName")),
            scheduled_procedure_step_id=_text(step.get("ScheduledProcedureStepID")),
            requested_procedure_id=_text(tags.get("RequestedProcedureID")),
            study_instance_uid=_text(tags.get("StudyInstanceUID")),
        )
    except MappingError as e:
        raise BackendError(f"{backend}: stored worklist item is malformed: {e}", backend) from e


def resolve_targets(target: str) -> List[str]:
    """Expand a target selector (``orthanc``, ``dcm4chee`` or ``both``)."""
    if target == BOTH:
        return list(BACKENDS)
    if target in BACKENDS:
        return [target]
    raise ValueError(f"Unknown target backend: {target!r}")


class WorklistPublisher(ABC):
    """Publishes worklist items to a PACS backend."""

    name: str = ""

    @abstractmethod
    def publish(self, item: WorklistItem, order_id: str = "") -> PublishResult:
        """Send an item to the backend.

        Calling this twice with the same accession number must not create a
        second worklist entry; the second call reports success with the
        ``already present`` note.

        Raises:
            BackendError: On any failure other than a duplicate accession
        """

    @abstractmethod
    def query_by_accession(self, accession_number: str) -> Optional[WorklistItem]:
        """Return the worklist item stored under an accession number, or None."""

    @abstractmethod
    def find_study(self, accession_number: str) -> List[StudyRef]:
        """Return every study carrying the accession number."""

    @abstractmethod
    def modify_accession(
        self,
        study_id: str,
        new_accession_number: str,
        *,
        delete_original: bool = False,
        extra_tags: Optional[Dict[str, str]] = None,
    ) -> StudyRef:
        """Rewrite the accession number of a study already on the backend."""

    @abstractmethod
    def verify_connection(self) -> Tuple[bool, str]:
        """Check that the backend answers with the configured credentials."""

    def conflict_result(self, item: WorklistItem, order_id: str, external_study_id: Optional[str]) -> PublishResult:
        return PublishResult(
            order_id=order_id,
            accession_number=item.accession_number,
            backend=self.name,
            success=True,
            external_study_id=external_study_id,
            note=ALREADY_PRESENT,
        )

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


def create_publishers(config, names: Iterable[str]) -> Dict[str, WorklistPublisher]:
    """Build the publishers named in ``names`` from the configuration.

    Args:
        config: Loaded ``MwlSyncConfiguration``
        names: Backend names to build

    Raises:
        ValueError: If a requested backend has no configuration section
    """
    from .dcm4chee_publisher import Dcm4cheePublisher
    from .orthanc_publisher import OrthancPublisher

    publishers: Dict[str, WorklistPublisher] = {}
    for name in names:
        if name == ORTHANC:
            if config.orthanc is None:
                raise ValueError("Target 'orthanc' requested but no 'orthanc' section is configured")
            publishers[name] = OrthancPublisher.from_config(config.orthanc)
        elif name == DCM4CHEE:
            if config.dcm4chee is None:
                raise ValueError("Target 'dcm4chee' requested but no 'dcm4chee' section is configured")
            publishers[name] = Dcm4cheePublisher.from_config(config.dcm4chee)
        else:
            raise ValueError(f"Unknown backend: {name!r}")
    return publishers
