import asyncio
from types import SimpleNamespace

import pytest

from fakes import FakePublisher, InMemoryOrderStore, make_detail
from mwl_sync.config import MwlSyncConfiguration
from mwl_sync.models import StudyRef
from mwl_sync.server import MwlSyncContext, create_mwl_sync_server


@pytest.fixture
def mcp(tmp_path):
    return create_mwl_sync_server(str(tmp_path / "configuration.yaml"))


@pytest.fixture
def dcm4chee():
    return FakePublisher("dcm4chee")


@pytest.fixture
def store():
    return InMemoryOrderStore([make_detail("1"), make_detail("2")])


@pytest.fixture
def ctx(dcm4chee, store):
    config = MwlSyncConfiguration.model_validate({"dcm4chee": {"base_url": "http://pacs:8080/dcm4chee-arc"}})
    sync_ctx = MwlSyncContext(config=config, publishers={"dcm4chee": dcm4chee}, store=store)
    return SimpleNamespace(request_context=SimpleNamespace(lifespan_context=sync_ctx))


def _tool(mcp, name):
    return mcp._tool_manager.get_tool(name).fn


def test_server_registers_sync_and_repair_tools(mcp):
    tools = asyncio.run(mcp.list_tools())

    assert {tool.name for tool in tools} == {
        "sync_worklist",
        "query_worklist_item",
        "find_study_by_accession",
        "rename_accession",
        "correlate_order",
        "delete_worklist_item",
        "verify_backends",
    }


def test_correlate_order_tool(mcp, ctx, dcm4chee, store):
    dcm4chee.studies["ACC1"] = [StudyRef("dcm4chee", "1.2.3", accession_number="ACC1")]
    correlate = _tool(mcp, "correlate_order")

    result = correlate(order_id="1", ctx=ctx)

    assert result["success"]
    assert result["study"]["study_id"] == "1.2.3"
    assert store.study_ids["1"] == "1.2.3"


def test_correlate_order_tool_reports_failures(mcp, ctx, dcm4chee, store):
    dcm4chee.studies["ACC2"] = [
        StudyRef("dcm4chee", "1.2.3", accession_number="ACC2"),
        StudyRef("dcm4chee", "1.2.4", accession_number="ACC2"),
    ]
    correlate = _tool(mcp, "correlate_order")

    assert not correlate(order_id="9", ctx=ctx)["success"]
    assert not correlate(order_id="2", ctx=ctx)["success"]
    assert not correlate(order_id="1", ctx=ctx)["success"]
    assert store.writes == []


def test_delete_worklist_item_tool(mcp, ctx, dcm4chee):
    delete = _tool(mcp, "delete_worklist_item")

    assert delete(study_instance_uid="1.2.3", sps_id="SPS-ACC1", ctx=ctx)["success"]
    assert dcm4chee.delete_calls == [("1.2.3", "SPS-ACC1")]
