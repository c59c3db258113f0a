"""
DICOM worklist query client.

Thin wrapper over pynetdicom used to check what a modality would actually
see: a C-ECHO to the worklist SCP and a Modality Worklist C-FIND.
"""
from typing import Dict, List, Any, Optional, Tuple

from pydicom.dataset import Dataset
from pynetdicom import AE
from pynetdicom.sop_class import ModalityWorklistInformationFind, Verification


def dataset_to_dict(dataset: Dataset) -> Dict[str, Any]:
    """Convert a DICOM dataset to a keyword-addressed dictionary.

    Args:
        dataset: DICOM dataset

    Returns:
        Dictionary representation of the dataset
    """
    if hasattr(dataset, "is_empty") and dataset.is_empty():
        return {}

    result = {}
    for elem in dataset:
        if not elem.keyword:
            continue
        if elem.VR == "SQ":
            result[elem.keyword] = [dataset_to_dict(item) for item in elem.value]
        elif elem.VM > 1:
            result[elem.keyword] = [str(value) for value in elem.value]
        elif elem.value is None:
            result[elem.keyword] = ""
        elif isinstance(elem.value, (int, float)):
            result[elem.keyword] = elem.value
        else:
            result[elem.keyword] = str(elem.value)
    return result


class WorklistQueryClient:
    """Queries a worklist SCP the same way a modality does."""

    def __init__(self, host: str, port: int, calling_aet: str, called_aet: str):
        """Initialize the client.

        Args:
            host: Worklist SCP hostname or IP
            port: Worklist SCP port
            calling_aet: Local AE title (our AE title)
            called_aet: Remote AE title of the worklist SCP
        """
        self.host = host
        self.port = port
        self.called_aet = called_aet
        self.calling_aet = calling_aet

        self.ae = AE(ae_title=calling_aet)
        self.ae.add_requested_context(Verification)
        self.ae.add_requested_context(ModalityWorklistInformationFind)

    def _describe(self) -> str:
        return f"{self.host}:{self.port} (Called AE: {self.called_aet}, Calling AE: {self.calling_aet})"

    def verify_connection(self) -> Tuple[bool, str]:
        """Verify connectivity to the worklist SCP using C-ECHO.

        Returns:
            Tuple of (success, message)
        """
        assoc = self.ae.associate(self.host, self.port, ae_title=self.called_aet)
        if not assoc.is_established:
            return False, f"Failed to associate with worklist SCP at {self._describe()}"

        status = assoc.send_c_echo()
        assoc.release()

        if status and status.Status == 0:
            return True, f"Connection successful to {self._describe()}"
        return False, f"C-ECHO failed with status: {status.Status if status else 'None'}"

    @staticmethod
    def build_query(
        accession_number: Optional[str] = None,
        modality: Optional[str] = None,
        station_ae_title: Optional[str] = None,
        start_date: Optional[str] = None,
    ) -> Dataset:
        """Build an MWL C-FIND identifier; empty attributes are return keys."""
        ds = Dataset()
        ds.PatientName = ""
        ds.PatientID = ""
        ds.PatientBirthDate = ""
        ds.PatientSex = ""
        ds.AccessionNumber = accession_number or ""
        ds.ReferringPhysicianName = ""
        ds.RequestedProcedureDescription = ""
        ds.RequestedProcedureID = ""
        ds.StudyInstanceUID = ""

        step = Dataset()
        step.Modality = modality or ""
        step.ScheduledStationAETitle = station_ae_title or ""
        step.ScheduledProcedureStepStartDate = start_date or ""
        step.ScheduledProcedureStepStartTime = ""
        step.ScheduledProcedureStepDescription = ""
        step.ScheduledProcedureStepID = ""
        step.ScheduledPerformingPhysicianName = ""
        ds.ScheduledProcedureStepSequence = [step]
        return ds

    def find_worklist(
        self,
        accession_number: Optional[str] = None,
        modality: Optional[str] = None,
        station_ae_title: Optional[str] = None,
        start_date: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Execute a Modality Worklist C-FIND.

        Returns:
            List of dictionaries, one per matching worklist item

        Raises:
            ConnectionError: If the association fails
        """
        query = self.build_query(accession_number, modality, station_ae_title, start_date)

        assoc = self.ae.associate(self.host, self.port, ae_title=self.called_aet)
        if not assoc.is_established:
            raise ConnectionError(f"Failed to associate with worklist SCP at {self._describe()}")

        results = []
        try:
            for status, dataset in assoc.send_c_find(query, ModalityWorklistInformationFind):
                if status and status.Status in (0xFF00, 0xFF01) and dataset:
                    results.append(dataset_to_dict(dataset))
        finally:
            assoc.release()

        return results
