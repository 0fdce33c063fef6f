"""
Failure Injection Tests.

Validates resilience against collaborator failures: routing provider,
notification transport and the background sweeper.
"""

import asyncio
import time

import httpx
import pytest
from sqlalchemy import select

from backend.app.core.config import Settings
from backend.app.core.reliability import CircuitBreaker, CircuitOpenError
from backend.app.domain.pickups.broker import AssignmentBroker
from backend.app.models.notification import Notification, NotificationType
from backend.app.models.pickup_enums import PickupStatus
from backend.app.services import offer_sweeper
from backend.app.services.notification_fanout import fanout
from backend.app.services.routing import RoutingService, routing_service

ORIGIN = (19.0176, 72.8562)
WAREHOUSE = (19.0760, 72.8777)


async def failing_func():
    raise ValueError("Boom")


async def working_func():
    return "ok"


@pytest.mark.asyncio
async def test_circuit_breaker_activates():
    """Circuit opens after threshold failures and rejects further calls."""
    cb = CircuitBreaker(failure_threshold=2, reset_timeout=60)

    for _ in range(2):
        with pytest.raises(ValueError):
            await cb.call(failing_func)

    assert cb.state == "OPEN"
    with pytest.raises(CircuitOpenError):
        await cb.call(working_func)


@pytest.mark.asyncio
async def test_half_open_failure_reopens():
    cb = CircuitBreaker(failure_threshold=1, reset_timeout=30)
    with pytest.raises(ValueError):
        await cb.call(failing_func)

    cb.last_failure_time = time.time() - 31
    with pytest.raises(ValueError):
        await cb.call(failing_func)

    assert cb.state == "OPEN"


@pytest.mark.asyncio
async def test_half_open_success_closes():
    cb = CircuitBreaker(failure_threshold=1, reset_timeout=30)
    with pytest.raises(ValueError):
        await cb.call(failing_func)

    cb.last_failure_time = time.time() - 31
    assert await cb.call(working_func) == "ok"
    assert cb.state == "CLOSED"
    assert cb.failures == 0


@pytest.mark.asyncio
async def test_routing_falls_back_when_provider_down(mocker):
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=60)
    service = RoutingService(base_url="http://osrm.test", enabled=True, breaker=breaker)
    get = mocker.patch.object(httpx.AsyncClient, "get", side_effect=httpx.ConnectError("connection refused"))

    for _ in range(3):
        route = await service.get_route(ORIGIN, WAREHOUSE)
        assert route.source == "straight_line"
        assert route.distance_km > 0

    # Third call short-circuits without touching the provider
    assert get.call_count == 2
    assert breaker.state == "OPEN"


@pytest.mark.asyncio
async def test_routing_parses_provider_route(mocker):
    service = RoutingService(base_url="http://osrm.test", enabled=True, breaker=CircuitBreaker())
    body = {
        "code": "Ok",
        "routes": [{
            "distance": 8400.0,
            "duration": 1260.0,
            "geometry": {"coordinates": [[72.8562, 19.0176], [72.8777, 19.0760]]},
        }],
    }
    get = mocker.patch.object(
        httpx.AsyncClient, "get",
        return_value=httpx.Response(200, json=body, request=httpx.Request("GET", "http://osrm.test")),
    )

    route = await service.get_route(ORIGIN, WAREHOUSE)

    assert route.source == "osrm"
    assert route.distance_km == 8.4
    assert route.duration_min == 21.0
    assert route.waypoints[0] == {"latitude": 19.0176, "longitude": 72.8562}
    # lon,lat order in the request path
    assert "72.8562,19.0176;72.8777,19.076" in get.call_args.args[0]


@pytest.mark.asyncio
async def test_routing_rejects_empty_route(mocker):
    service = RoutingService(base_url="http://osrm.test", enabled=True, breaker=CircuitBreaker())
    mocker.patch.object(
        httpx.AsyncClient, "get",
        return_value=httpx.Response(200, json={"code": "NoRoute", "routes": []},
                                    request=httpx.Request("GET", "http://osrm.test")),
    )

    route = await service.get_route(ORIGIN, WAREHOUSE)
    assert route.source == "straight_line"


@pytest.mark.asyncio
async def test_routing_falls_back_on_invalid_url(mocker):
    service = RoutingService(base_url="http://osrm.test", enabled=True, breaker=CircuitBreaker())
    mocker.patch.object(httpx.AsyncClient, "get", side_effect=httpx.InvalidURL("Invalid URL component"))

    route = await service.get_route(ORIGIN, WAREHOUSE)

    assert route.source == "straight_line"
    assert route.distance_km > 0


@pytest.mark.asyncio
async def test_accept_survives_misconfigured_router(
    db_session, online_agent, awaiting_pickup, as_actor, monkeypatch, mocker
):
    monkeypatch.setattr(routing_service, "enabled", True)
    monkeypatch.setattr(routing_service, "breaker", CircuitBreaker())
    mocker.patch.object(httpx.AsyncClient, "get", side_effect=httpx.InvalidURL("Invalid URL component"))
    agent = await online_agent()
    pickup = await awaiting_pickup(pickup_location=ORIGIN)

    pickup = await AssignmentBroker.accept(db_session, pickup.id, as_actor(agent))

    assert pickup.status == PickupStatus.ASSIGNED
    assert pickup.route_summary["source"] == "straight_line"


def test_offer_retired_soon_after_client_countdown():
    # A lapsed offer lives at most one sweep interval past the 20s countdown
    defaults = {name: field.default for name, field in Settings.model_fields.items()}
    assert defaults["offer_window_seconds"] == 20
    assert defaults["offer_window_seconds"] + defaults["offer_sweep_interval_seconds"] <= 21


@pytest.mark.asyncio
async def test_push_failure_is_swallowed(mock_redis):
    mock_redis.fail_publish = True

    fanout.notify(42, NotificationType.PICKUP_STATUS, {"pickup_id": 1})
    await fanout.drain()

    assert mock_redis.published == []


@pytest.mark.asyncio
async def test_transport_down_does_not_block_transitions(db_session, mock_redis, awaiting_pickup, requester):
    mock_redis.fail_publish = True

    pickup = await awaiting_pickup()
    await fanout.drain()

    assert pickup.status == PickupStatus.AWAITING_AGENT
    inbox = (await db_session.execute(
        select(Notification).where(Notification.user_id == requester.id)
    )).scalars().all()
    assert [n.type for n in inbox] == [NotificationType.PICKUP_APPROVED]


@pytest.mark.asyncio
async def test_health_reports_transport_down(client, mock_redis):
    await mock_redis.aclose()

    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["notification_transport"] == "down"


@pytest.mark.asyncio
async def test_sweep_once_uses_own_session(session_factory, awaiting_pickup):
    await awaiting_pickup()

    stats = await offer_sweeper.sweep_once(session_factory)

    assert set(stats) == {"queued", "expired", "offered", "new_rounds"}


@pytest.mark.asyncio
async def test_sweeper_survives_failed_pass(mocker):
    calls = []

    async def broken_sweep(session_factory):
        calls.append(1)
        raise RuntimeError("database unavailable")

    mocker.patch.object(offer_sweeper, "sweep_once", side_effect=broken_sweep)

    task = asyncio.create_task(offer_sweeper.run_sweeper(interval_seconds=0.01))
    await asyncio.sleep(0.1)
    await offer_sweeper.stop_sweeper(task)

    assert len(calls) >= 2
    assert task.cancelled()
