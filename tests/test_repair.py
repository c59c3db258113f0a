import pytest

from fakes import FakePublisher, InMemoryOrderStore, make_detail
from mwl_sync.errors import AmbiguousStudyError, BackendConnectionError, OrderNotFoundError
from mwl_sync.models import StudyRef
from mwl_sync.repair import (
    correlate_order,
    find_study_by_accession,
    rename_accession,
    rename_accession_by_lookup,
)


@pytest.fixture
def orthanc_with_studies():
    publisher = FakePublisher("orthanc")
    publisher.studies = {
        "OLD1": [StudyRef("orthanc", "study-1", accession_number="OLD1")],
        "TWICE": [StudyRef("orthanc", "a", accession_number="TWICE"), StudyRef("orthanc", "b", accession_number="TWICE")],
    }
    return publisher


def test_find_study_by_accession(orthanc_with_studies):
    assert find_study_by_accession(orthanc_with_studies, "OLD1").study_id == "study-1"
    assert find_study_by_accession(orthanc_with_studies, "MISSING") is None


def test_find_study_by_accession_rejects_ambiguous_matches(orthanc_with_studies):
    with pytest.raises(AmbiguousStudyError) as exc_info:
        find_study_by_accession(orthanc_with_studies, "TWICE")
    assert "a, b" in str(exc_info.value)


def test_rename_accession(orthanc_with_studies):
    result = rename_accession(orthanc_with_studies, "study-1", " NEW1 ", delete_original=True,
                              extra_tags={"StudyDescription": "CT Thorax"})

    assert result.success
    assert result.old_study_id == "study-1"
    assert result.new_study_id == "study-1-renamed"
    assert result.new_accession_number == "NEW1"
    assert orthanc_with_studies.modify_calls == [("study-1", "NEW1", True, {"StudyDescription": "CT Thorax"})]


def test_rename_accession_reports_backend_failures():
    publisher = FakePublisher("orthanc", fail_with=BackendConnectionError("orthanc: down", "orthanc"))

    result = rename_accession(publisher, "study-1", "NEW1")

    assert not result.success
    assert result.error_type == "ConnectionError"
    assert "down" in result.error_message


def test_rename_accession_rejects_empty_accession(orthanc_with_studies):
    result = rename_accession(orthanc_with_studies, "study-1", "  ")
    assert not result.success
    assert orthanc_with_studies.modify_calls == []


def test_rename_by_lookup(orthanc_with_studies):
    result = rename_accession_by_lookup(orthanc_with_studies, "OLD1", "NEW1")
    assert result.success
    assert result.old_study_id == "study-1"

    missing = rename_accession_by_lookup(orthanc_with_studies, "MISSING", "NEW1")
    assert not missing.success
    assert missing.error_type == "NotFound"

    ambiguous = rename_accession_by_lookup(orthanc_with_studies, "TWICE", "NEW1")
    assert not ambiguous.success
    assert ambiguous.error_type == "AmbiguousStudy"


def test_correlate_order_writes_found_study_id(orthanc_with_studies):
    store = InMemoryOrderStore([make_detail("1", accession="OLD1"), make_detail("2", accession="NONE")])

    study = correlate_order(store, orthanc_with_studies, "1")

    assert study.study_id == "study-1"
    assert store.writes == [("1", "study-1")]
    assert correlate_order(store, orthanc_with_studies, "2") is None
    with pytest.raises(OrderNotFoundError):
        correlate_order(store, orthanc_with_studies, "404")
