"""
Worklist item mapper.

Turns an RIS order and its joined records into a ``WorklistItem``. Pure
transformation: no I/O, the same input always yields the same item.
"""

from datetime import datetime
from typing import Callable, Optional

from .dicom_values import encode_date, encode_person_name, encode_sex, encode_time
from .errors import MappingError
from .models import Modality, Order, OrderDetail, Patient, Practitioner, ProcedureCode, WorklistItem

DEFAULT_PROCEDURE_DESCRIPTION = "Radiological Examination"


def select_ae_title(order: Order, modality: Modality, preferred_ae_title: Optional[str] = None) -> str:
    """Pick the station AE title for an order.

    Order of precedence: the order's own AE title, the configured preferred
    title, the first title listed on the modality. Titles outside the
    modality's list are ignored.

    Raises:
        MappingError: If the modality has no AE title
    """
    titles = [t.strip() for t in modality.ae_titles if t and t.strip()]
    if not titles:
        raise MappingError(f"Modality {modality.code!r} has no AE title configured")

    for candidate in (order.ae_title, preferred_ae_title):
        if candidate and candidate.strip() in titles:
            return candidate.strip()
    return titles[0]


def _procedure_description(order: Order, modality: Modality, procedure: Optional[ProcedureCode]) -> str:
    for text in (
        procedure.display if procedure else None,
        modality.name,
        order.notes,
    ):
        if text and text.strip():
            return text.strip()
    return DEFAULT_PROCEDURE_DESCRIPTION


def build_worklist_item(
    order: Order,
    patient: Patient,
    practitioner: Optional[Practitioner],
    modality: Modality,
    procedure: Optional[ProcedureCode] = None,
    *,
    referring: Optional[Practitioner] = None,
    preferred_ae_title: Optional[str] = None,
    allow_default_schedule: bool = False,
    now: Optional[Callable[[], datetime]] = None,
) -> WorklistItem:
    """Build a worklist item from an order and its joined records.

    Args:
        order: The RIS order
        patient: Patient the order belongs to
        practitioner: Performing practitioner, if assigned
        modality: Modality device the order is assigned to
        procedure: Requested procedure coding (LOINC)
        referring: Requesting practitioner, if known
        preferred_ae_title: Configured station AE title to prefer
        allow_default_schedule: Use ``now()`` when the order has no schedule
        now: Clock used for the default schedule

    Returns:
        The mapped WorklistItem

    Raises:
        MappingError: If the order cannot be published as-is
    """
    accession = (order.accession_number or "").strip()
    if not accession:
        raise MappingError(f"Order {order.order_id} has no accession number")

    if not patient.mrn or not patient.mrn.strip():
        raise MappingError(f"Order {order.order_id}: patient {patient.patient_id} has no MRN")
    if patient.birth_date is None:
        raise MappingError(f"Order {order.order_id}: patient {patient.patient_id} has no birth date")

    station_aet = select_ae_title(order, modality, preferred_ae_title)

    scheduled = order.schedule_date
    if scheduled is None:
        if not allow_default_schedule:
            raise MappingError(f"Order {order.order_id} has no confirmed schedule date")
        scheduled = (now or datetime.now)()

    try:
        birth_date = encode_date(patient.birth_date)
        start_date = encode_date(scheduled)
        start_time = encode_time(scheduled)
    except ValueError as e:
        raise MappingError(f"Order {order.order_id}: {e}") from e

    description = _procedure_description(order, modality, procedure)
    performing = encode_person_name(practitioner.name) if practitioner else None
    referring_name = encode_person_name(referring.name) if referring else None

    return WorklistItem(
        patient_id=patient.mrn.strip(),
        patient_name=encode_person_name(patient.name) or "UNKNOWN",
        patient_birth_date=birth_date,
        patient_sex=encode_sex(patient.sex),
        accession_number=accession,
        requested_procedure_description=description,
        scheduled_procedure_step_description=description,
        scheduled_station_ae_title=station_aet,
        modality=(order.modality_code or modality.code).strip(),
        scheduled_procedure_step_start_date=start_date,
        scheduled_procedure_step_start_time=start_time,
        scheduled_performing_physician_name=performing or None,
        referring_physician_name=referring_name or None,
        scheduled_procedure_step_id=f"SPS-{accession}",
        requested_procedure_id=order.order_number or accession,
        requested_procedure_code=procedure.code if procedure else None,
        requested_procedure_code_meaning=procedure.display if procedure else None,
        diagnosis_code=order.diagnosis_code,
        diagnosis_display=order.diagnosis_display,
        payer_type=order.payer_type,
        priority=order.priority,
        patient_address=patient.address,
        patient_phone=patient.phone,
    )


def build_from_detail(detail: OrderDetail, **options) -> WorklistItem:
    """Shortcut for ``build_worklist_item`` on a joined ``OrderDetail``."""
    return build_worklist_item(
        detail.order,
        detail.patient,
        detail.performer,
        detail.modality,
        detail.procedure,
        referring=detail.requester,
        **options,
    )
