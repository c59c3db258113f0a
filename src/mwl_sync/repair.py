"""
Correlation and repair utilities.

Operator tools for studies that were acquired under the wrong accession
number, and for orders whose study id never made it back to the RIS. None of
this runs as part of the sync loop.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .errors import AmbiguousStudyError, BackendError, MwlSyncError
from .models import StudyRef
from .publisher import WorklistPublisher
from .ris_client import OrderStore

logger = logging.getLogger("mwl_sync.repair")


@dataclass(frozen=True)
class RenameResult:
    success: bool
    old_study_id: Optional[str]
    new_study_id: Optional[str] = None
    new_accession_number: Optional[str] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    study: Optional[StudyRef] = None


def find_study_by_accession(publisher: WorklistPublisher, accession_number: str) -> Optional[StudyRef]:
    """Return the single study carrying the accession number, or None.

    Raises:
        AmbiguousStudyError: If more than one study matches
    """
    studies = publisher.find_study(accession_number)
    if not studies:
        return None
    if len(studies) > 1:
        ids = ", ".join(s.study_id for s in studies)
        raise AmbiguousStudyError(
            f"{len(studies)} studies on {publisher.name} carry accession {accession_number}: {ids}",
            publisher.name,
        )
    return studies[0]


def rename_accession(
    publisher: WorklistPublisher,
    study_id: str,
    new_accession_number: str,
    *,
    delete_original: bool = False,
    extra_tags: Optional[Dict[str, str]] = None,
) -> RenameResult:
    """Rewrite the accession number of one study on one backend."""
    if not new_accession_number or not new_accession_number.strip():
        return RenameResult(False, study_id, error_message="New accession number is empty", error_type="ValidationError")

    try:
        study = publisher.modify_accession(
            study_id,
            new_accession_number.strip(),
            delete_original=delete_original,
            extra_tags=extra_tags,
        )
    except BackendError as e:
        logger.error("Renaming study %s on %s failed: %s", study_id, publisher.name, e)
        return RenameResult(False, study_id, error_message=str(e), error_type=e.classification)

    return RenameResult(
        success=True,
        old_study_id=study_id,
        new_study_id=study.study_id,
        new_accession_number=new_accession_number.strip(),
        study=study,
    )


def rename_accession_by_lookup(
    publisher: WorklistPublisher,
    old_accession_number: str,
    new_accession_number: str,
    *,
    delete_original: bool = False,
    extra_tags: Optional[Dict[str, str]] = None,
) -> RenameResult:
    """Find the study by its current accession number, then rename it."""
    try:
        study = find_study_by_accession(publisher, old_accession_number)
    except BackendError as e:
        return RenameResult(False, None, error_message=str(e), error_type=e.classification)

    if study is None:
        return RenameResult(
            False, None,
            error_message=f"No study with accession {old_accession_number} on {publisher.name}",
            error_type="NotFound",
        )
    return rename_accession(
        publisher, study.study_id, new_accession_number,
        delete_original=delete_original, extra_tags=extra_tags,
    )


def correlate_order(store: OrderStore, publisher: WorklistPublisher, order_id: str) -> Optional[StudyRef]:
    """Look the order's accession up on the backend and record the study id.

    Returns the study written back, or None when the backend has no study
    for the accession.

    Raises:
        OrderNotFoundError: If the order does not exist
        AmbiguousStudyError: If several studies carry the accession
    """
    detail = store.get_order_detail(order_id)
    accession = (detail.order.accession_number or "").strip()
    if not accession:
        raise MwlSyncError(f"Order {order_id} has no accession number")

    study = find_study_by_accession(publisher, accession)
    if study is None:
        logger.info("No study for accession %s on %s", accession, publisher.name)
        return None

    store.set_study_id(order_id, study.study_id)
    logger.info("Order %s correlated with %s study %s", order_id, publisher.name, study.study_id)
    return study
