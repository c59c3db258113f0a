"""
Worklist sync MCP server.

Exposes sync runs and the repair utilities as MCP tools so an assistant can
push orders, inspect worklist items and fix accession numbers.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Any, AsyncIterator, Dict, List, Optional

from mcp.server.fastmcp import Context, FastMCP

from .config import MwlSyncConfiguration, load_config
from .dicom_client import WorklistQueryClient
from .errors import BackendError, MwlSyncError
from .models import OrderFilter
from .publisher import BACKENDS, DCM4CHEE, WorklistPublisher, create_publishers, resolve_targets
from .repair import correlate_order as correlate_study
from .repair import find_study_by_accession as find_single_study
from .repair import rename_accession as rename_study_accession
from .repair import rename_accession_by_lookup
from .ris_client import OrderStore, RisOrderStore
from .sync import WorklistSync

logger = logging.getLogger("mwl_sync")


@dataclass
class MwlSyncContext:
    """Context for the worklist sync MCP server."""
    config: MwlSyncConfiguration
    publishers: Dict[str, WorklistPublisher] = field(default_factory=dict)
    store: Optional[OrderStore] = None

    def publisher(self, backend: Optional[str]) -> WorklistPublisher:
        name = backend or self.config.sync.primary
        if name not in self.publishers:
            raise ValueError(f"Backend {name!r} is not configured (available: {', '.join(self.publishers) or 'none'})")
        return self.publishers[name]


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def create_mwl_sync_server(config_path: str, name: str = "MWL Sync") -> FastMCP:
    """Create and configure the worklist sync MCP server."""

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[MwlSyncContext]:
        config = load_config(config_path)

        configured = [backend for backend in BACKENDS if getattr(config, backend) is not None]
        publishers = create_publishers(config, configured)
        logger.info("Publishers initialized: %s", ", ".join(publishers) or "none")

        store: Optional[OrderStore] = None
        if config.ris:
            try:
                store = RisOrderStore.from_config(config.ris)
                store.ping()
                logger.info("RIS order store initialized (host=%s, db=%s)", config.ris.host, config.ris.database)
            except Exception as exc:
                logger.warning("Failed to initialize RIS order store: %s", exc)
                store = None

        try:
            yield MwlSyncContext(config=config, publishers=publishers, store=store)
        finally:
            for publisher in publishers.values():
                publisher.close()

    mcp = FastMCP(name, lifespan=lifespan)

    @mcp.tool()
    def sync_worklist(
        limit: int = 10,
        accession_number: Optional[str] = None,
        order_id: Optional[str] = None,
        statuses: Optional[List[str]] = None,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        target: Optional[str] = None,
        primary: Optional[str] = None,
        dry_run: bool = False,
        force: bool = False,
        ctx: Context = None,
    ) -> Dict[str, Any]:
        """Publish RIS orders as Modality Worklist items.

        Orders that already carry a study id are skipped unless ``force`` is
        set. With ``dry_run`` the mapped items are returned without being sent.

        Args:
            limit: Maximum number of orders to process
            accession_number: Only the order with this accession number
            order_id: Only the order with this id
            statuses: Order statuses to select (default IN_REQUEST, SCHEDULED)
            from_date: Earliest schedule date, YYYY-MM-DD
            to_date: Latest schedule date, YYYY-MM-DD
            target: orthanc, dcm4chee or both (default from configuration)
            primary: Backend whose result decides the order outcome
            dry_run: Map only, do not publish
            force: Publish even when the order already has a study id

        Returns:
            Counts, one line per order per backend, and the full results
        """
        sync_ctx = ctx.request_context.lifespan_context
        if sync_ctx.store is None:
            return {"success": False, "message": "RIS order store is not configured or unreachable"}

        settings = sync_ctx.config.sync
        try:
            names = resolve_targets(target or settings.target)
            publishers = {name: sync_ctx.publisher(name) for name in names}
            order_filter = OrderFilter(
                order_id=order_id,
                accession_number=accession_number,
                statuses=tuple(statuses) if statuses else tuple(settings.statuses),
                from_date=_parse_date(from_date),
                to_date=_parse_date(to_date),
                limit=limit,
            )
            engine = WorklistSync(sync_ctx.store, publishers, primary=primary, settings=settings)
            report = engine.run(order_filter, dry_run=dry_run, force=force)
        except (ValueError, MwlSyncError) as e:
            return {"success": False, "message": str(e)}

        return {
            "success": True,
            "summary": report.summary(),
            "lines": report.format_lines(),
            **report.to_dict(),
        }

    @mcp.tool()
    def query_worklist_item(accession_number: str, backend: Optional[str] = None, ctx: Context = None) -> Dict[str, Any]:
        """Read back the worklist item stored under an accession number.

        Args:
            accession_number: Accession number to look up
            backend: orthanc or dcm4chee (default: the primary backend)
        """
        sync_ctx = ctx.request_context.lifespan_context
        try:
            item = sync_ctx.publisher(backend).query_by_accession(accession_number)
        except (ValueError, BackendError) as e:
            return {"success": False, "message": str(e)}
        if item is None:
            return {"success": False, "message": f"No worklist item with accession {accession_number}"}
        return {"success": True, "item": item.to_dict()}

    @mcp.tool()
    def find_study_by_accession(accession_number: str, backend: Optional[str] = None, ctx: Context = None) -> Dict[str, Any]:
        """Find the study carrying an accession number on a backend.

        Args:
            accession_number: Accession number to look up
            backend: orthanc or dcm4chee (default: the primary backend)
        """
        sync_ctx = ctx.request_context.lifespan_context
        try:
            study = find_single_study(sync_ctx.publisher(backend), accession_number)
        except (ValueError, BackendError) as e:
            return {"success": False, "message": str(e)}
        if study is None:
            return {"success": False, "message": f"No study with accession {accession_number}"}
        return {"success": True, "study": study.to_dict()}

    @mcp.tool()
    def rename_accession(
        new_accession_number: str,
        study_id: Optional[str] = None,
        old_accession_number: Optional[str] = None,
        backend: Optional[str] = None,
        delete_original: bool = False,
        extra_tags: Optional[Dict[str, str]] = None,
        ctx: Context = None,
    ) -> Dict[str, Any]:
        """Rewrite the accession number of a study already on a backend.

        Identify the study either by its backend id (``study_id``) or by its
        current accession number (``old_accession_number``).

        Args:
            new_accession_number: Accession number to write
            study_id: Backend study id (Orthanc id or Study Instance UID)
            old_accession_number: Current accession number of the study
            backend: orthanc or dcm4chee (default: the primary backend)
            delete_original: Delete the original study after the rewrite (Orthanc)
            extra_tags: Additional DICOM keyword/value pairs to replace
        """
        sync_ctx = ctx.request_context.lifespan_context
        if bool(study_id) == bool(old_accession_number):
            return {"success": False, "message": "Provide exactly one of study_id or old_accession_number"}
        try:
            publisher = sync_ctx.publisher(backend)
        except ValueError as e:
            return {"success": False, "message": str(e)}

        if study_id:
            result = rename_study_accession(
                publisher, study_id, new_accession_number,
                delete_original=delete_original, extra_tags=extra_tags,
            )
        else:
            result = rename_accession_by_lookup(
                publisher, old_accession_number, new_accession_number,
                delete_original=delete_original, extra_tags=extra_tags,
            )
        return {
            "success": result.success,
            "old_study_id": result.old_study_id,
            "new_study_id": result.new_study_id,
            "new_accession_number": result.new_accession_number,
            "message": result.error_message or "Accession number updated",
        }

    @mcp.tool()
    def correlate_order(order_id: str, backend: Optional[str] = None, ctx: Context = None) -> Dict[str, Any]:
        """Find the study of a RIS order by its accession number and record its id on the order.

        Args:
            order_id: RIS order id
            backend: orthanc or dcm4chee (default: the primary backend)
        """
        sync_ctx = ctx.request_context.lifespan_context
        if sync_ctx.store is None:
            return {"success": False, "message": "RIS order store is not configured or unreachable"}
        try:
            study = correlate_study(sync_ctx.store, sync_ctx.publisher(backend), order_id)
        except (ValueError, MwlSyncError) as e:
            return {"success": False, "message": str(e)}
        if study is None:
            return {"success": False, "message": f"No study found for order {order_id}"}
        return {"success": True, "study": study.to_dict()}

    @mcp.tool()
    def delete_worklist_item(study_instance_uid: str, sps_id: str, ctx: Context = None) -> Dict[str, Any]:
        """Delete a worklist item from dcm4chee.

        Args:
            study_instance_uid: Study Instance UID of the item
            sps_id: Scheduled Procedure Step ID of the item
        """
        sync_ctx = ctx.request_context.lifespan_context
        try:
            sync_ctx.publisher(DCM4CHEE).delete_item(study_instance_uid, sps_id)
        except (ValueError, BackendError) as e:
            return {"success": False, "message": str(e)}
        return {"success": True, "message": f"Deleted worklist item {study_instance_uid}/{sps_id}"}

    @mcp.tool()
    def verify_backends(ctx: Context = None) -> Dict[str, Any]:
        """Check connectivity to every configured backend, the RIS and the worklist SCP."""
        sync_ctx = ctx.request_context.lifespan_context
        config = sync_ctx.config
        checks: Dict[str, Any] = {}

        for name, publisher in sync_ctx.publishers.items():
            ok, message = publisher.verify_connection()
            checks[name] = {"success": ok, "message": message}

        if sync_ctx.store is not None:
            try:
                checks["ris"] = sync_ctx.store.ping()
            except Exception as e:
                checks["ris"] = {"success": False, "message": str(e)}
        elif config.ris:
            checks["ris"] = {"success": False, "message": "RIS order store unreachable at startup"}

        if config.worklist_scp:
            scp = config.worklist_scp
            client = WorklistQueryClient(scp.host, scp.port, config.calling_aet, scp.ae_title)
            ok, message = client.verify_connection()
            checks["worklist_scp"] = {"success": ok, "message": message}

        return {"success": all(check.get("success") for check in checks.values()), "checks": checks}

    return mcp
