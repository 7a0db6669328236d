import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
import respx

from finopsbridge.models import Violation, ViolationStatus
from finopsbridge.modules.notifications.domain.fanout import NotificationFanout
from finopsbridge.shared.core.exceptions import RepositoryError
from tests.utils import ORG_ID, make_policy, make_webhook

NOW = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)


def _violation() -> Violation:
    return Violation(
        id="v1",
        policy_id="p1",
        resource_id="acc-1",
        resource_type="cloud_provider",
        cloud_provider="aws",
        message="over budget",
        severity="high",
        status=ViolationStatus.PENDING,
    )


def _repository(webhooks):
    repository = AsyncMock()
    repository.find_enabled_webhooks.return_value = webhooks
    return repository


@pytest_asyncio.fixture
async def client():
    async with httpx.AsyncClient() as c:
        yield c


@pytest.mark.asyncio
async def test_one_failing_endpoint_does_not_block_the_others(settings, client):
    webhooks = [
        make_webhook(0, id="w0", type="slack", url="https://hooks.example.com/slack"),
        make_webhook(1, id="w1", type="discord", url="https://hooks.example.com/discord"),
        make_webhook(2, id="w2", type="generic", url="https://hooks.example.com/generic"),
    ]
    fanout = NotificationFanout(_repository(webhooks), settings=settings, client=client)

    with respx.mock(base_url="https://hooks.example.com") as router:
        slack = router.post("/slack").respond(200)
        router.post("/discord").respond(500)
        generic = router.post("/generic").respond(204)

        results = await fanout.notify(ORG_ID, _violation(), make_policy(0, id="p1"), now=NOW)

    by_id = {r.webhook_id: r for r in results}
    assert by_id["w0"].delivered and by_id["w2"].delivered
    assert by_id["w1"].delivered is False
    assert by_id["w1"].status_code == 500
    assert "500" in by_id["w1"].error
    assert "blocks" in json.loads(slack.calls.last.request.content)
    assert json.loads(generic.calls.last.request.content)["violation"]["id"] == "v1"


@pytest.mark.asyncio
async def test_timeout_is_reported_not_raised(settings, client):
    fanout = NotificationFanout(
        _repository([make_webhook(0, id="w0")]), settings=settings, client=client
    )

    with respx.mock() as router:
        router.post("https://hooks.example.com/0").mock(
            side_effect=httpx.ReadTimeout("slow")
        )
        [result] = await fanout.notify(ORG_ID, _violation(), make_policy(0), now=NOW)

    assert result.delivered is False
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_connection_error_is_reported(settings, client):
    fanout = NotificationFanout(
        _repository([make_webhook(0, id="w0")]), settings=settings, client=client
    )

    with respx.mock() as router:
        router.post("https://hooks.example.com/0").mock(
            side_effect=httpx.ConnectError("refused")
        )
        [result] = await fanout.notify(ORG_ID, _violation(), make_policy(0), now=NOW)

    assert result.delivered is False
    assert result.status_code is None


@pytest.mark.asyncio
async def test_plain_http_rejected_when_https_required(settings, client):
    settings.WEBHOOK_REQUIRE_HTTPS = True
    fanout = NotificationFanout(
        _repository([make_webhook(0, id="w0", url="http://hooks.example.com/0")]),
        settings=settings,
        client=client,
    )

    with respx.mock() as router:
        [result] = await fanout.notify(ORG_ID, _violation(), make_policy(0), now=NOW)

    assert result.delivered is False
    assert "HTTPS" in result.error
    assert len(router.calls) == 0


@pytest.mark.asyncio
async def test_no_webhooks_sends_nothing(settings, client):
    repository = _repository([])
    fanout = NotificationFanout(repository, settings=settings, client=client)

    assert await fanout.notify(ORG_ID, _violation(), make_policy(0), now=NOW) == []
    repository.find_enabled_webhooks.assert_awaited_once_with(ORG_ID)


@pytest.mark.asyncio
async def test_webhook_lookup_failure_sends_nothing(settings, client):
    repository = AsyncMock()
    repository.find_enabled_webhooks.side_effect = RepositoryError("db unavailable")
    fanout = NotificationFanout(repository, settings=settings, client=client)

    with respx.mock() as router:
        results = await fanout.notify(ORG_ID, _violation(), make_policy(0, id="p1"), now=NOW)

    assert results == []
    assert len(router.calls) == 0
