from dataclasses import replace
from datetime import date, datetime

import pytest

from fakes import make_detail
from mwl_sync.errors import MappingError
from mwl_sync.mapper import (
    DEFAULT_PROCEDURE_DESCRIPTION,
    build_from_detail,
    build_worklist_item,
    select_ae_title,
)
from mwl_sync.models import Modality, Order, Patient, WorklistItem


def _order(**fields):
    base = dict(order_id="1", accession_number="ACC123", status="SCHEDULED",
                schedule_date=datetime(2025, 6, 1, 10, 0))
    base.update(fields)
    return Order(**base)


PATIENT = Patient(patient_id="P1", mrn="MRN001", name="John  Doe", birth_date=date(1970, 3, 4), sex="Male")
CT = Modality(code="CT", name="CT Scan", ae_titles=("CT01",))


def test_builds_expected_item():
    item = build_worklist_item(_order(), PATIENT, None, CT)

    assert item.accession_number == "ACC123"
    assert item.scheduled_procedure_step_start_date == "20250601"
    assert item.scheduled_procedure_step_start_time == "100000"
    assert item.scheduled_station_ae_title == "CT01"
    assert item.modality == "CT"
    assert item.patient_id == "MRN001"
    assert item.patient_name == "John^Doe"
    assert item.patient_birth_date == "19700304"
    assert item.patient_sex == "M"
    assert item.scheduled_procedure_step_id == "SPS-ACC123"
    assert item.requested_procedure_id == "ACC123"
    assert item.requested_procedure_description == "CT Scan"


def test_mapping_is_deterministic():
    detail = make_detail("7")
    assert build_from_detail(detail) == build_from_detail(detail)


@pytest.mark.parametrize("accession", ["", "   ", None])
def test_empty_accession_is_rejected(accession):
    with pytest.raises(MappingError):
        build_worklist_item(_order(accession_number=accession), PATIENT, None, CT)


def test_missing_patient_data_is_rejected():
    with pytest.raises(MappingError):
        build_worklist_item(_order(), replace(PATIENT, mrn=None), None, CT)
    with pytest.raises(MappingError):
        build_worklist_item(_order(), replace(PATIENT, birth_date=None), None, CT)


def test_modality_without_ae_title_is_rejected():
    with pytest.raises(MappingError):
        build_worklist_item(_order(), PATIENT, None, Modality(code="MR", ae_titles=()))


def test_missing_schedule_requires_opt_in():
    with pytest.raises(MappingError):
        build_worklist_item(_order(schedule_date=None), PATIENT, None, CT)

    item = build_worklist_item(
        _order(schedule_date=None), PATIENT, None, CT,
        allow_default_schedule=True, now=lambda: datetime(2025, 1, 2, 3, 4, 5),
    )
    assert item.scheduled_procedure_step_start_date == "20250102"
    assert item.scheduled_procedure_step_start_time == "030405"


def test_ae_title_selection_order():
    modality = Modality(code="CT", ae_titles=("CT01", "CT02", "CT03"))

    assert select_ae_title(_order(), modality) == "CT01"
    assert select_ae_title(_order(), modality, preferred_ae_title="CT03") == "CT03"
    assert select_ae_title(_order(ae_title="CT02"), modality, preferred_ae_title="CT03") == "CT02"
    # Titles that do not belong to the modality are ignored
    assert select_ae_title(_order(ae_title="MR01"), modality, preferred_ae_title="XA01") == "CT01"


def test_procedure_description_fallbacks():
    bare = Modality(code="CT", ae_titles=("CT01",))
    assert build_worklist_item(_order(notes="Thorax"), PATIENT, None, bare).requested_procedure_description == "Thorax"
    assert (build_worklist_item(_order(), PATIENT, None, bare).requested_procedure_description
            == DEFAULT_PROCEDURE_DESCRIPTION)


def test_detail_carries_practitioners_and_coding():
    item = build_from_detail(make_detail("9", payer_type="BPJS", diagnosis_code="J18.9"))

    assert item.scheduled_performing_physician_name == "dr.^Andi^Pratama"
    assert item.referring_physician_name == "dr.^Rina^Wijaya"
    assert item.requested_procedure_code == "24627-2"
    assert item.requested_procedure_description == "CT Chest"
    assert item.requested_procedure_id == "ORD-9"
    assert item.payer_type == "BPJS"
    assert item.diagnosis_code == "J18.9"


def test_worklist_item_validates_formats():
    with pytest.raises(MappingError):
        WorklistItem(
            patient_id="MRN1", patient_name="A", patient_birth_date="1970-03-04", patient_sex="M",
            accession_number="ACC1", requested_procedure_description="X",
            scheduled_procedure_step_description="X", scheduled_station_ae_title="CT01", modality="CT",
            scheduled_procedure_step_start_date="20250601", scheduled_procedure_step_start_time="100000",
        )
