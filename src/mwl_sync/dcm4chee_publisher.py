"""
dcm4chee-arc worklist publisher.

Uses the archive's dedicated MWL REST API (``/aets/{AET}/rs/mwlitems``).
Payloads are DICOM JSON built with pydicom. The archive requires the
patient to exist before an item referencing it can be stored, so every
publish creates the patient first; a 409 on that step is expected.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from pydicom.dataset import Dataset
from pydicom.uid import generate_uid

from .dicom_client import dataset_to_dict
from .errors import BackendConnectionError, BackendError, ConflictError
from .models import PublishResult, StudyRef, WorklistItem
from .publisher import DCM4CHEE, WorklistPublisher, error_for_status, item_from_tags

logger = logging.getLogger("mwl_sync.dcm4chee")

DICOM_JSON = "application/dicom+json"

# RIS priorities to DICOM Requested Procedure Priority (0040,1003)
PRIORITIES = {"ROUTINE": "ROUTINE", "URGENT": "HIGH", "STAT": "STAT"}


def _code_item(value: str, scheme: str, meaning: Optional[str]) -> Dataset:
    code = Dataset()
    code.CodeValue = value
    code.CodingSchemeDesignator = scheme
    code.CodeMeaning = meaning or value
    return code


def build_patient_dataset(item: WorklistItem) -> Dataset:
    ds = Dataset()
    ds.PatientName = item.patient_name
    ds.PatientID = item.patient_id
    ds.PatientBirthDate = item.patient_birth_date
    ds.PatientSex = item.patient_sex
    if item.patient_address:
        ds.PatientAddress = item.patient_address
    if item.patient_phone:
        ds.PatientTelephoneNumbers = item.patient_phone
    return ds


def build_mwl_dataset(item: WorklistItem, study_instance_uid: str) -> Dataset:
    """Build the full MWL item, including the fields only this backend keeps."""
    ds = Dataset()
    ds.SpecificCharacterSet = "ISO_IR 192"
    ds.StudyInstanceUID = study_instance_uid
    ds.AccessionNumber = item.accession_number
    ds.PatientID = item.patient_id
    ds.PatientName = item.patient_name
    ds.PatientBirthDate = item.patient_birth_date
    ds.PatientSex = item.patient_sex
    ds.ReferringPhysicianName = item.referring_physician_name or ""
    ds.RequestedProcedureID = item.requested_procedure_id or item.accession_number
    ds.RequestedProcedureDescription = item.requested_procedure_description

    if item.requested_procedure_code:
        ds.RequestedProcedureCodeSequence = [
            _code_item(item.requested_procedure_code, "LN", item.requested_procedure_code_meaning)
        ]
    if item.priority and item.priority.upper() in PRIORITIES:
        ds.RequestedProcedurePriority = PRIORITIES[item.priority.upper()]
    if item.payer_type:
        ds.RequestedProcedureComments = f"Payer: {item.payer_type}"
    if item.diagnosis_code:
        ds.AdmittingDiagnosesCodeSequence = [
            _code_item(item.diagnosis_code, "ICD10", item.diagnosis_display)
        ]
    if item.diagnosis_display:
        ds.AdmittingDiagnosesDescription = item.diagnosis_display

    step = Dataset()
    step.Modality = item.modality
    step.ScheduledStationAETitle = item.scheduled_station_ae_title
    step.ScheduledProcedureStepStartDate = item.scheduled_procedure_step_start_date
    step.ScheduledProcedureStepStartTime = item.scheduled_procedure_step_start_time
    step.ScheduledProcedureStepID = item.scheduled_procedure_step_id or f"SPS-{item.accession_number}"
    step.ScheduledProcedureStepDescription = item.scheduled_procedure_step_description
    step.ScheduledProcedureStepStatus = "SCHEDULED"
    if item.scheduled_performing_physician_name:
        step.ScheduledPerformingPhysicianName = item.scheduled_performing_physician_name
    ds.ScheduledProcedureStepSequence = [step]
    return ds


class Dcm4cheePublisher(WorklistPublisher):
    """Publishes worklist items to a dcm4chee-arc archive."""

    name = DCM4CHEE

    def __init__(
        self,
        base_url: str,
        ae_title: str = "DCM4CHEE",
        calling_aet: str = "RIS_API",
        timeout: float = 10.0,
        verify_tls: bool = True,
        uid_factory: Callable[[], str] = generate_uid,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the publisher.

        Args:
            base_url: Archive REST base (e.g. "http://pacs:8080/dcm4chee-arc")
            ae_title: Archive AE title that owns the worklist
            calling_aet: Our AE title, sent as the X-Calling-AET header
            timeout: Per-request timeout in seconds
            verify_tls: Verify server certificates on HTTPS
            uid_factory: Generator for pre-assigned Study Instance UIDs
            transport: Custom httpx transport, mainly for tests
        """
        self.base_url = base_url.rstrip('/')
        self.ae_title = ae_title
        self.calling_aet = calling_aet
        self.uid_factory = uid_factory
        self.client = httpx.Client(
            base_url=f"{self.base_url}/aets/{ae_title}/rs",
            timeout=timeout,
            verify=verify_tls,
            headers={"X-Calling-AET": calling_aet},
            transport=transport,
        )

    @classmethod
    def from_config(cls, config) -> "Dcm4cheePublisher":
        return cls(
            base_url=config.base_url,
            ae_title=config.ae_title,
            calling_aet=config.calling_aet,
            timeout=config.timeout,
            verify_tls=config.verify_tls,
        )

    def _request(self, method: str, path: str, action: str, **kwargs) -> Any:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise BackendConnectionError(f"{self.name}: {action} failed: {e}", self.name) from e

        if response.is_error:
            logger.debug("dcm4chee %s %s -> %s: %s", method, path, response.status_code, response.text)
            raise error_for_status(self.name, response.status_code, response.text, action)

        # The archive answers 204 when a query matches nothing
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _query_items(self, **params) -> List[Dataset]:
        results = self._request(
            "GET", "/mwlitems", "query worklist items",
            params=params, headers={"Accept": DICOM_JSON},
        ) or []
        return [Dataset.from_json(result) for result in results]

    def _post_item(self, ds: Dataset, action: str) -> None:
        self._request(
            "POST", "/mwlitems", action,
            json=ds.to_json_dict(), headers={"Content-Type": DICOM_JSON, "Accept": "application/json"},
        )

    def create_patient(self, item: WorklistItem) -> None:
        """Create the patient record; an existing patient is not an error."""
        try:
            self._request(
                "POST", "/patients", "create patient",
                json=build_patient_dataset(item).to_json_dict(),
                headers={"Content-Type": DICOM_JSON, "Accept": "application/json"},
            )
        except ConflictError:
            logger.debug("Patient %s already exists in dcm4chee", item.patient_id)

    def publish(self, item: WorklistItem, order_id: str = "") -> PublishResult:
        existing = self._query_items(AccessionNumber=item.accession_number)
        if existing:
            study_uid = str(getattr(existing[0], "StudyInstanceUID", "")) or None
            logger.info("Accession %s already present in dcm4chee (study %s)", item.accession_number, study_uid)
            return self.conflict_result(item, order_id, study_uid)

        self.create_patient(item)

        study_instance_uid = self.uid_factory()
        try:
            self._post_item(build_mwl_dataset(item, study_instance_uid), "create worklist item")
        except ConflictError:
            return self.conflict_result(item, order_id, None)

        logger.info("Worklist item %s created in dcm4chee (study %s)", item.accession_number, study_instance_uid)
        return PublishResult(
            order_id=order_id,
            accession_number=item.accession_number,
            backend=self.name,
            success=True,
            external_study_id=study_instance_uid,
        )

    def query_by_accession(self, accession_number: str) -> Optional[WorklistItem]:
        items = self._query_items(AccessionNumber=accession_number)
        if not items:
            return None
        return item_from_tags(dataset_to_dict(items[0]), self.name)

    def find_study(self, accession_number: str) -> List[StudyRef]:
        results = self._request(
            "GET", "/studies", "query studies",
            params={"AccessionNumber": accession_number, "includefield": "StudyDescription"},
            headers={"Accept": DICOM_JSON},
        ) or []
        refs = []
        for result in results:
            ds = Dataset.from_json(result)
            study_uid = str(getattr(ds, "StudyInstanceUID", ""))
            refs.append(StudyRef(
                backend=self.name,
                study_id=study_uid,
                study_instance_uid=study_uid,
                accession_number=str(getattr(ds, "AccessionNumber", "")) or None,
                patient_id=str(getattr(ds, "PatientID", "")) or None,
                patient_name=str(getattr(ds, "PatientName", "")) or None,
                study_date=str(getattr(ds, "StudyDate", "")) or None,
                study_description=str(getattr(ds, "StudyDescription", "")) or None,
                url=f"{self.base_url}/aets/{self.ae_title}/rs/studies/{study_uid}",
            ))
        return refs

    def modify_accession(
        self,
        study_id: str,
        new_accession_number: str,
        *,
        delete_original: bool = False,
        extra_tags: Optional[Dict[str, str]] = None,
    ) -> StudyRef:
        """Rewrite the accession number of the worklist item(s) of a study.

        ``study_id`` is the Study Instance UID. Items are updated in place by
        re-posting them, so ``delete_original`` has nothing to remove.
        """
        items = self._query_items(StudyInstanceUID=study_id)
        if not items:
            raise BackendError(f"{self.name}: no worklist item for study {study_id}", self.name, 404)

        for ds in items:
            ds.AccessionNumber = new_accession_number
            for keyword, value in (extra_tags or {}).items():
                setattr(ds, keyword, value)
            self._post_item(ds, "update worklist item")

        logger.info("Worklist items of study %s now carry accession %s", study_id, new_accession_number)
        first = items[0]
        return StudyRef(
            backend=self.name,
            study_id=study_id,
            study_instance_uid=study_id,
            accession_number=new_accession_number,
            patient_id=str(getattr(first, "PatientID", "")) or None,
            patient_name=str(getattr(first, "PatientName", "")) or None,
        )

    def delete_item(self, study_instance_uid: str, sps_id: str) -> None:
        self._request("DELETE", f"/mwlitems/{study_instance_uid}/{sps_id}", "delete worklist item")

    def verify_connection(self) -> Tuple[bool, str]:
        try:
            self._request("GET", "/mwlitems", "query worklist", params={"limit": 1},
                          headers={"Accept": DICOM_JSON})
        except BackendError as e:
            return False, f"dcm4chee at {self.base_url} unreachable: {e}"
        return True, f"dcm4chee worklist of {self.ae_title} reachable at {self.base_url}"

    def close(self) -> None:
        self.client.close()
