"""
Orthanc worklist publisher.

Orthanc has no native worklist object. Items are approximated by creating a
zero-image DICOM instance through ``/tools/create-dicom`` whose tags satisfy
MWL query matching. This is a capability limitation of the backend, not of
the engine: the instance shows up as a study in Orthanc Explorer.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from .errors import BackendConnectionError, BackendError, ConflictError
from .models import PublishResult, StudyRef, WorklistItem
from .publisher import ORTHANC, WorklistPublisher, error_for_status, item_from_tags

logger = logging.getLogger("mwl_sync.orthanc")


def build_create_dicom_tags(item: WorklistItem) -> Dict[str, Any]:
    """Build the ``Tags`` payload of an Orthanc create-dicom request."""
    step = {
        "ScheduledStationAETitle": item.scheduled_station_ae_title,
        "ScheduledProcedureStepStartDate": item.scheduled_procedure_step_start_date,
        "ScheduledProcedureStepStartTime": item.scheduled_procedure_step_start_time,
        "Modality": item.modality,
        "ScheduledPerformingPhysicianName": item.scheduled_performing_physician_name or "",
        "ScheduledProcedureStepDescription": item.scheduled_procedure_step_description,
        "ScheduledProcedureStepID": item.scheduled_procedure_step_id or f"SPS-{item.accession_number}",
    }
    return {
        "PatientID": item.patient_id,
        "PatientName": item.patient_name,
        "PatientBirthDate": item.patient_birth_date,
        "PatientSex": item.patient_sex,
        "AccessionNumber": item.accession_number,
        "ReferringPhysicianName": item.referring_physician_name or "",
        "RequestedProcedureDescription": item.requested_procedure_description,
        "RequestedProcedureID": item.requested_procedure_id or item.accession_number,
        "ScheduledProcedureStepSequence": [step],
    }


class OrthancPublisher(WorklistPublisher):
    """Publishes worklist items to Orthanc over its REST API (HTTP Basic auth)."""

    name = ORTHANC

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 10.0,
        verify_tls: bool = True,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the publisher.

        Args:
            base_url: Orthanc REST base URL (e.g. "http://pacs:8042")
            username: HTTP Basic user
            password: HTTP Basic password
            timeout: Per-request timeout in seconds
            verify_tls: Verify server certificates on HTTPS
            session: Pre-built session, mainly for tests
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.session = session or requests.Session()
        self.session.auth = (username, password)

    @classmethod
    def from_config(cls, config) -> "OrthancPublisher":
        return cls(
            base_url=config.base_url,
            username=config.username,
            password=config.password,
            timeout=config.timeout,
            verify_tls=config.verify_tls,
        )

    def _request(self, method: str, path: str, action: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, timeout=self.timeout, verify=self.verify_tls, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise BackendConnectionError(f"{self.name}: {action} failed: {e}", self.name) from e

        if not 200 <= response.status_code < 300:
            logger.debug("Orthanc %s %s -> %s: %s", method, path, response.status_code, response.text)
            raise error_for_status(self.name, response.status_code, response.text, action)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _find(self, level: str, accession_number: str, expand: bool = False) -> List[Any]:
        payload = {"Level": level, "Query": {"AccessionNumber": accession_number}}
        if expand:
            payload["Expand"] = True
        return self._request("POST", "/tools/find", f"find {level.lower()}", json=payload) or []

    def _study_ref(self, study: Dict[str, Any]) -> StudyRef:
        main_tags = study.get("MainDicomTags", {})
        patient_tags = study.get("PatientMainDicomTags", {})
        study_id = study.get("ID", "")
        return StudyRef(
            backend=self.name,
            study_id=study_id,
            study_instance_uid=main_tags.get("StudyInstanceUID"),
            accession_number=main_tags.get("AccessionNumber"),
            patient_id=patient_tags.get("PatientID"),
            patient_name=patient_tags.get("PatientName"),
            study_date=main_tags.get("StudyDate"),
            study_description=main_tags.get("StudyDescription"),
            url=f"{self.base_url}/studies/{study_id}",
        )

    def publish(self, item: WorklistItem, order_id: str = "") -> PublishResult:
        existing = self._find("Study", item.accession_number)
        if existing:
            logger.info("Accession %s already present in Orthanc (study %s)", item.accession_number, existing[0])
            return self.conflict_result(item, order_id, existing[0])

        try:
            created = self._request(
                "POST", "/tools/create-dicom", "create worklist instance",
                json={"Tags": build_create_dicom_tags(item)},
            )
        except ConflictError:
            return self.conflict_result(item, order_id, None)

        instance_id = (created or {}).get("ID")
        if not instance_id:
            raise BackendError(f"{self.name}: create-dicom returned no instance ID", self.name, body=str(created))

        study = self._request("GET", f"/instances/{instance_id}/study", "resolve parent study") or {}
        study_id = study.get("ID")
        logger.info("Worklist item %s created in Orthanc (instance %s, study %s)",
                    item.accession_number, instance_id, study_id)
        return PublishResult(
            order_id=order_id,
            accession_number=item.accession_number,
            backend=self.name,
            success=True,
            external_study_id=study_id,
        )

    def query_by_accession(self, accession_number: str) -> Optional[WorklistItem]:
        instances = self._find("Instance", accession_number)
        if not instances:
            return None
        tags = self._request("GET", f"/instances/{instances[0]}/simplified-tags", "read worklist tags") or {}
        return item_from_tags(tags, self.name)

    def find_study(self, accession_number: str) -> List[StudyRef]:
        return [self._study_ref(study) for study in self._find("Study", accession_number, expand=True)]

    def modify_accession(
        self,
        study_id: str,
        new_accession_number: str,
        *,
        delete_original: bool = False,
        extra_tags: Optional[Dict[str, str]] = None,
    ) -> StudyRef:
        replace = {"AccessionNumber": new_accession_number}
        replace.update(extra_tags or {})
        # Force is required by Orthanc whenever identifiers are touched
        modified = self._request(
            "POST", f"/studies/{study_id}/modify", "modify accession number",
            json={"Replace": replace, "Force": True},
        ) or {}
        new_study_id = modified.get("ID")
        if not new_study_id:
            raise BackendError(f"{self.name}: modify returned no study ID", self.name, body=str(modified))

        logger.info("Study %s rewritten as %s with accession %s", study_id, new_study_id, new_accession_number)
        if delete_original and new_study_id != study_id:
            self._request("DELETE", f"/studies/{study_id}", "delete original study")
            logger.info("Original study %s deleted", study_id)

        study = self._request("GET", f"/studies/{new_study_id}", "read modified study") or {}
        return self._study_ref(study)

    def verify_connection(self) -> Tuple[bool, str]:
        try:
            system = self._request("GET", "/system", "read system information") or {}
        except BackendError as e:
            return False, f"Orthanc at {self.base_url} unreachable: {e}"
        return True, f"Orthanc {system.get('Version', 'unknown')} reachable at {self.base_url}"

    def close(self) -> None:
        self.session.close()
