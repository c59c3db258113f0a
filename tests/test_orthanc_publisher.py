import json

import pytest
import requests

from fakes import make_detail
from mwl_sync.errors import AuthError, BackendConnectionError, ValidationError
from mwl_sync.mapper import build_from_detail
from mwl_sync.orthanc_publisher import OrthancPublisher, build_create_dicom_tags
from mwl_sync.publisher import ALREADY_PRESENT

BASE = "http://orthanc:8042"


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body
        self.text = json.dumps(body) if body is not None else ""
        self.content = self.text.encode()

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class FakeSession:
    """Answers requests from a route table keyed by (method, path)."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []
        self.auth = None

    def request(self, method, url, timeout=None, verify=None, json=None, **kwargs):
        path = url[len(BASE):]
        self.calls.append((method, path, json))
        handler = self.routes.get((method, path))
        if handler is None:
            return FakeResponse(404, {"Message": "Unknown resource"})
        return handler(json) if callable(handler) else handler

    def close(self):
        pass


@pytest.fixture
def item():
    return build_from_detail(make_detail("1", accession="ACC123"))


def _publisher(routes):
    session = FakeSession(routes)
    return OrthancPublisher(BASE, "orthanc", "secret", session=session), session


def test_create_dicom_tags_carry_the_worklist_step(item):
    tags = build_create_dicom_tags(item)

    assert tags["AccessionNumber"] == "ACC123"
    assert tags["PatientID"] == "MRN1"
    step = tags["ScheduledProcedureStepSequence"][0]
    assert step["ScheduledStationAETitle"] == "CT01"
    assert step["ScheduledProcedureStepStartDate"] == "20250601"
    assert step["ScheduledProcedureStepStartTime"] == "100000"
    assert step["ScheduledProcedureStepID"] == "SPS-ACC123"


def test_publish_creates_instance_and_resolves_study(item):
    publisher, session = _publisher({
        ("POST", "/tools/find"): FakeResponse(200, []),
        ("POST", "/tools/create-dicom"): FakeResponse(200, {"ID": "inst-1", "Path": "/instances/inst-1"}),
        ("GET", "/instances/inst-1/study"): FakeResponse(200, {"ID": "study-1"}),
    })

    result = publisher.publish(item, "1")

    assert result.success
    assert result.external_study_id == "study-1"
    assert result.note is None
    assert session.auth == ("orthanc", "secret")
    created = [payload for method, path, payload in session.calls if path == "/tools/create-dicom"]
    assert created[0]["Tags"]["AccessionNumber"] == "ACC123"


def test_publish_is_idempotent(item):
    existing = []

    def find(payload):
        return FakeResponse(200, list(existing))

    def create(payload):
        existing.append("study-1")
        return FakeResponse(200, {"ID": "inst-1"})

    publisher, session = _publisher({
        ("POST", "/tools/find"): find,
        ("POST", "/tools/create-dicom"): create,
        ("GET", "/instances/inst-1/study"): FakeResponse(200, {"ID": "study-1"}),
    })

    first = publisher.publish(item)
    second = publisher.publish(item)

    assert first.success and second.success
    assert second.note == ALREADY_PRESENT
    assert second.external_study_id == first.external_study_id
    assert len([c for c in session.calls if c[1] == "/tools/create-dicom"]) == 1


def test_conflict_is_reported_as_already_present(item):
    publisher, _ = _publisher({
        ("POST", "/tools/find"): FakeResponse(200, []),
        ("POST", "/tools/create-dicom"): FakeResponse(409, {"Message": "exists"}),
    })

    result = publisher.publish(item)

    assert result.success
    assert result.note == ALREADY_PRESENT


@pytest.mark.parametrize("status,error", [
    (401, AuthError), (403, AuthError), (400, ValidationError), (503, BackendConnectionError),
])
def test_http_errors_are_classified(item, status, error):
    publisher, _ = _publisher({("POST", "/tools/find"): FakeResponse(status, {"Message": "nope"})})

    with pytest.raises(error) as exc_info:
        publisher.publish(item)
    assert exc_info.value.status_code == status
    assert exc_info.value.backend == "orthanc"


def test_transport_errors_become_connection_errors(item):
    class DownSession(FakeSession):
        def request(self, *args, **kwargs):
            raise requests.exceptions.ConnectTimeout("timed out")

    publisher = OrthancPublisher(BASE, "orthanc", "secret", session=DownSession({}))

    with pytest.raises(BackendConnectionError):
        publisher.publish(item)
    ok, message = publisher.verify_connection()
    assert not ok
    assert "unreachable" in message


def test_query_by_accession_reads_simplified_tags(item):
    tags = build_create_dicom_tags(item)
    publisher, _ = _publisher({
        ("POST", "/tools/find"): FakeResponse(200, ["inst-1"]),
        ("GET", "/instances/inst-1/simplified-tags"): FakeResponse(200, tags),
    })

    found = publisher.query_by_accession("ACC123")

    assert found.accession_number == "ACC123"
    assert found.scheduled_station_ae_title == "CT01"
    assert found.scheduled_procedure_step_start_time == "100000"
    assert found.patient_name == item.patient_name


def test_query_by_accession_returns_none_when_absent():
    publisher, _ = _publisher({("POST", "/tools/find"): FakeResponse(200, [])})
    assert publisher.query_by_accession("NOPE") is None


STUDY = {
    "ID": "study-1",
    "MainDicomTags": {"AccessionNumber": "OLD1", "StudyInstanceUID": "1.2.3", "StudyDate": "20250601"},
    "PatientMainDicomTags": {"PatientID": "MRN1", "PatientName": "DOE^JOHN"},
}


def test_find_study_expands_results():
    publisher, session = _publisher({("POST", "/tools/find"): FakeResponse(200, [STUDY])})

    studies = publisher.find_study("OLD1")

    assert session.calls[0][2] == {"Level": "Study", "Query": {"AccessionNumber": "OLD1"}, "Expand": True}
    assert studies[0].study_id == "study-1"
    assert studies[0].patient_id == "MRN1"
    assert studies[0].url == f"{BASE}/studies/study-1"


def test_modify_accession_forces_replace_and_deletes_original():
    renamed = dict(STUDY, ID="study-2", MainDicomTags=dict(STUDY["MainDicomTags"], AccessionNumber="NEW1"))
    publisher, session = _publisher({
        ("POST", "/studies/study-1/modify"): FakeResponse(200, {"ID": "study-2", "Path": "/studies/study-2"}),
        ("DELETE", "/studies/study-1"): FakeResponse(200, {}),
        ("GET", "/studies/study-2"): FakeResponse(200, renamed),
    })

    ref = publisher.modify_accession("study-1", "NEW1", delete_original=True, extra_tags={"StudyDescription": "CT"})

    modify = session.calls[0]
    assert modify[2] == {"Replace": {"AccessionNumber": "NEW1", "StudyDescription": "CT"}, "Force": True}
    assert ("DELETE", "/studies/study-1", None) in session.calls
    assert ref.study_id == "study-2"
    assert ref.accession_number == "NEW1"


def test_verify_connection_reports_version():
    publisher, _ = _publisher({("GET", "/system"): FakeResponse(200, {"Version": "1.12.4"})})
    ok, message = publisher.verify_connection()
    assert ok
    assert "1.12.4" in message
