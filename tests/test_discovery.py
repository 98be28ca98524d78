from __future__ import annotations

import asyncio
import uuid

import pytest

from webhook_service.core.exceptions import (
    DiscoveryError,
    DiscoveryInProgressError,
    NotFoundError,
    ValidationError,
)
from webhook_service.domain.discovery import DiscoverySettings
from webhook_service.domain.dom import DomNode, MutationRecord, parse_html
from webhook_service.domain.dto import RegisteredElementUpdate
from webhook_service.domain.enums import DiscoverySessionStatus, HttpMethod
from webhook_service.services.discovery import DiscoveryEngine, DomMonitor, resolve_snapshot

from tests.utils import create_webhook

FEATURE = "knowledge-base"
PAGE = "/files"

PAGE_HTML = """
<html><body>
  <div id="toolbar">
    <button id="save-btn">Save</button>
    <button id="delete-btn">Delete</button>
  </div>
</body></html>
"""


@pytest.fixture
async def discovery(gateways, settings):
    engine = DiscoveryEngine(gateways, settings)
    yield engine
    await engine.close()


async def test_scan_finds_button_and_suggests_post(discovery, tenant_id, store):
    snapshot = parse_html(
        '<button>Submit</button><div onclick="x()" style="width:5px;height:5px;display:none"></div>'
    )

    elements = await discovery.scan_page_elements(tenant_id, FEATURE, PAGE, snapshot)
    suggestions = discovery.suggest_webhook_mappings(elements)

    assert len(elements) == 1
    assert len(suggestions) == 1
    assert suggestions[0].confidence >= 0.8
    assert suggestions[0].suggested_method == HttpMethod.POST
    [row] = store.rows("discovered_elements")
    assert row["organization_id"] == tenant_id
    assert row["element_type"] == "button"


async def test_rescan_updates_instead_of_duplicating(discovery, tenant_id, store):
    snapshot = parse_html(PAGE_HTML)
    await discovery.scan_page_elements(tenant_id, FEATURE, PAGE, snapshot)
    await discovery.scan_page_elements(tenant_id, FEATURE, PAGE, snapshot)

    assert len(store.rows("discovered_elements")) == 2


def test_resolve_snapshot_requires_input():
    node = DomNode(tag="body")
    assert resolve_snapshot(node, "<p>ignored</p>") is node
    assert resolve_snapshot(None, "<button>x</button>").children[0].tag == "button"
    with pytest.raises(ValidationError):
        resolve_snapshot(None, None)


async def test_scan_pages_returns_results_per_page(discovery, tenant_id):
    results = await discovery.scan_pages(
        tenant_id,
        FEATURE,
        {"/files": parse_html(PAGE_HTML), "/empty": parse_html("<p>nothing</p>")},
    )

    assert sorted(element.element_id for element in results["/files"]) == ["delete-btn", "save-btn"]
    assert results["/empty"] == []


async def _register_all(discovery, tenant_id, html: str):
    elements = await discovery.scan_page_elements(tenant_id, FEATURE, PAGE, parse_html(html))
    return [await discovery.register_element(tenant_id, FEATURE, PAGE, element) for element in elements]


async def test_compare_detects_added_removed_and_modified(discovery, tenant_id):
    await _register_all(discovery, tenant_id, PAGE_HTML)
    changed = parse_html(
        '<div id="toolbar"><button id="save-btn">Save all</button><button id="new-btn">New</button></div>'
    )

    changes = await discovery.compare_element_changes(tenant_id, FEATURE, PAGE, changed)

    assert [element.element_id for element in changes.added] == ["new-btn"]
    assert [element.element_id for element in changes.removed] == ["delete-btn"]
    [modified] = changes.modified
    assert modified.element_id == "save-btn"
    assert set(modified.changes) == {"text_content"}
    assert modified.changes["text_content"].old_value == "Save"
    assert modified.changes["text_content"].new_value == "Save all"
    assert changes.unchanged == []


async def test_unchanged_page_reports_everything_unchanged(discovery, tenant_id):
    await _register_all(discovery, tenant_id, PAGE_HTML)

    changes = await discovery.compare_element_changes(tenant_id, FEATURE, PAGE, parse_html(PAGE_HTML))

    assert {element.element_id for element in changes.unchanged} == {"save-btn", "delete-btn"}
    assert changes.added == changes.removed == changes.modified == []


async def test_compare_accounts_for_elements_sharing_an_id(discovery, tenant_id):
    html = (
        '<fieldset><input type="radio" name="plan" value="basic">'
        '<input type="radio" name="plan" value="pro">'
        '<input type="radio" name="plan" value="team"></fieldset>'
    )

    first = await discovery.compare_element_changes(tenant_id, FEATURE, PAGE, parse_html(html))
    assert [element.element_id for element in first.added] == ["plan", "plan-2", "plan-3"]

    await _register_all(discovery, tenant_id, html)
    again = await discovery.compare_element_changes(tenant_id, FEATURE, PAGE, parse_html(html))
    assert [element.element_id for element in again.unchanged] == ["plan", "plan-2", "plan-3"]
    assert again.added == again.removed == again.modified == []


async def test_reregistration_tracks_stability(discovery, tenant_id, store):
    [first, _] = await _register_all(discovery, tenant_id, PAGE_HTML)
    assert first.is_stable
    assert first.display_name == "Save"

    elements = await discovery.scan_page_elements(
        tenant_id, FEATURE, PAGE, parse_html('<button id="save-btn">Save now</button>')
    )
    again = await discovery.register_element(tenant_id, FEATURE, PAGE, elements[0], display_name="Primary save")

    assert again.id == first.id
    assert not again.is_stable
    assert again.display_name == "Primary save"
    assert len(store.rows("page_elements")) == 2


async def test_registered_elements_report_bound_webhooks(discovery, gateways, settings, tenant_id):
    await _register_all(discovery, tenant_id, PAGE_HTML)
    await create_webhook(
        gateways, settings, tenant_id, "https://hooks.example.com", page_path=PAGE, element_id="save-btn"
    )

    elements = {e.element_id: e for e in await discovery.get_registered_elements(tenant_id, feature_slug=FEATURE)}

    assert elements["save-btn"].has_active_webhook
    assert elements["save-btn"].webhook_count == 1
    assert not elements["delete-btn"].has_active_webhook
    assert await discovery.get_registered_elements(uuid.uuid4(), feature_slug=FEATURE) == []


async def test_update_registered_element(discovery, tenant_id):
    [first, _] = await _register_all(discovery, tenant_id, PAGE_HTML)

    updated = await discovery.update_registered_element(
        tenant_id, first.id, RegisteredElementUpdate(description="Persists the document", is_stable=False)
    )

    assert updated.description == "Persists the document"
    assert not updated.is_stable
    with pytest.raises(NotFoundError):
        await discovery.update_registered_element(uuid.uuid4(), first.id, RegisteredElementUpdate(description="x"))


async def test_auto_discovery_session_lifecycle(discovery, tenant_id, store):
    monitor = await discovery.start_auto_discovery(
        tenant_id, FEATURE, PAGE, DiscoverySettings(auto_approve=True)
    )
    assert monitor.active

    with pytest.raises(DiscoveryInProgressError):
        await discovery.start_auto_discovery(tenant_id, FEATURE, "/other")

    mutations = [
        MutationRecord(type="child_list", added_nodes=[DomNode(tag="button", attributes={"id": "upload"}, text="Upload")]),
        MutationRecord(type="attributes", attribute_name="style", target=DomNode(tag="button", text="Ignored")),
        MutationRecord(type="attributes", attribute_name="data-testid", target=DomNode(tag="a", attributes={"href": "/x", "data-testid": "docs"})),
    ]
    assert await discovery.submit_mutations(tenant_id, monitor.session_id, mutations) == 3
    await monitor.drain()

    status = await discovery.get_discovery_status(tenant_id, monitor.session_id)
    assert status.session.elements_discovered == 2
    assert status.session.pages_scanned == [PAGE]
    assert status.statistics.total_elements == 2
    assert status.statistics.by_type == {"button": 1, "link": 1}
    registered = await discovery.get_registered_elements(tenant_id, feature_slug=FEATURE)
    assert sorted(element.element_id for element in registered) == ["docs", "upload"]

    stopped = await discovery.stop_auto_discovery(tenant_id, monitor.session_id)
    assert stopped.status == DiscoverySessionStatus.COMPLETED
    assert stopped.completed_at is not None
    assert not monitor.active
    assert (await discovery.stop_auto_discovery(tenant_id, monitor.session_id)).completed_at == stopped.completed_at

    with pytest.raises(DiscoveryError):
        await discovery.submit_mutations(tenant_id, monitor.session_id, mutations)

    # A finished session frees the feature for a new one.
    await discovery.start_auto_discovery(tenant_id, FEATURE, PAGE)


async def test_scan_during_session_counts_towards_it(discovery, tenant_id):
    monitor = await discovery.start_auto_discovery(tenant_id, FEATURE, PAGE)

    await discovery.scan_page_elements(tenant_id, FEATURE, "/settings", parse_html(PAGE_HTML))

    status = await discovery.get_discovery_status(tenant_id, monitor.session_id)
    assert status.session.elements_discovered == 2
    assert status.session.pages_scanned == [PAGE, "/settings"]


async def test_unknown_session(discovery, tenant_id):
    with pytest.raises(NotFoundError):
        await discovery.get_discovery_status(tenant_id, uuid.uuid4())


async def test_monitor_survives_handler_errors():
    handled: list[int] = []

    async def handler(batch):
        if not handled:
            handled.append(-1)
            raise RuntimeError("boom")
        handled.append(len(batch))

    monitor = DomMonitor(uuid.uuid4(), PAGE, handler)
    monitor.start()
    batch = [MutationRecord(type="child_list")]
    monitor.submit(batch)
    monitor.submit(batch * 2)
    await monitor.drain()

    assert handled == [-1, 2]
    await monitor.stop()
    await monitor.stop()
    with pytest.raises(DiscoveryError):
        monitor.submit(batch)


async def test_monitor_stop_drops_pending_batches():
    started = asyncio.Event()

    async def handler(batch):
        started.set()
        await asyncio.sleep(10)

    monitor = DomMonitor(uuid.uuid4(), PAGE, handler)
    monitor.start()
    monitor.submit([MutationRecord(type="child_list")])
    await asyncio.wait_for(started.wait(), timeout=1)

    await asyncio.wait_for(monitor.stop(), timeout=1)
    assert not monitor.active
