"""
Tests for DiscoveryClient and HeartbeatAgent.

Tests cover:
1. Request shapes against a mocked requests session
2. Error mapping (404 -> InstanceNotFoundError)
3. Re-registration after the registry forgets an instance
4. End-to-end against the FastAPI app
"""

from unittest.mock import Mock

import pytest
import requests
from fastapi.testclient import TestClient

from api_gateway.gateway import RegistryGateway, create_app
from registry.client import CLIENT_ID_HEADER, DiscoveryClient, HeartbeatAgent
from registry.errors import InstanceNotFoundError, RegistryError
from registry.models import InstanceInfo, InstanceStatus
from registry.query_cache import QueryCache


def response(status_code=200, payload=None):
    resp = Mock()
    resp.status_code = status_code
    resp.json.return_value = payload or {}
    resp.text = ""
    return resp


@pytest.fixture
def session():
    session = Mock()
    session.headers = {}
    return session


@pytest.fixture
def instance(make_instance):
    return make_instance("i-1")


# =============================================================================
# DiscoveryClient
# =============================================================================

class TestDiscoveryClient:
    """Tests for DiscoveryClient with a mocked session."""

    def test_client_id_header(self, session):
        DiscoveryClient("http://registry:8761", client_id="svc-1", session=session)
        assert session.headers[CLIENT_ID_HEADER] == "svc-1"

    def test_register_posts_instance(self, session, instance):
        session.request.return_value = response(
            payload=instance.model_dump(mode="json")
        )
        client = DiscoveryClient("http://registry:8761/", session=session)

        client.register(instance, lease_duration_seconds=45)

        method, url = session.request.call_args.args
        body = session.request.call_args.kwargs["json"]
        assert (method, url) == ("POST", "http://registry:8761/apps/ORDERS")
        assert body["instance_id"] == "i-1"
        assert body["lease_duration_seconds"] == 45
        assert "lease" not in body

    def test_renew_404_raises_not_found(self, session):
        session.request.return_value = response(404)
        client = DiscoveryClient(session=session)

        with pytest.raises(InstanceNotFoundError) as exc:
            client.renew("orders", "i-1")
        assert exc.value.app_name == "ORDERS"

    def test_server_error_raises_registry_error(self, session):
        session.request.return_value = response(500)
        client = DiscoveryClient(session=session)

        with pytest.raises(RegistryError):
            client.cancel("orders", "i-1")

    def test_transport_error_raises_registry_error(self, session):
        session.request.side_effect = requests.ConnectionError("refused")
        client = DiscoveryClient(session=session)

        with pytest.raises(RegistryError):
            client.renew("orders", "i-1")

    def test_status_update_sends_value(self, session, instance):
        session.request.return_value = response(payload=instance.model_dump(mode="json"))
        client = DiscoveryClient(session=session)

        client.update_status("orders", "i-1", InstanceStatus.DOWN)
        assert session.request.call_args.kwargs["params"] == {"value": "DOWN"}


# =============================================================================
# HeartbeatAgent
# =============================================================================

class TestHeartbeatAgent:
    """Tests for HeartbeatAgent."""

    def test_first_beat_registers(self, instance):
        client = Mock()
        agent = HeartbeatAgent(client, instance)

        agent.beat()
        client.register.assert_called_once_with(instance, None)
        client.renew.assert_not_called()
        assert agent.registered

    def test_reregisters_after_404(self, instance):
        client = Mock()
        client.renew.side_effect = InstanceNotFoundError("ORDERS", "i-1")
        agent = HeartbeatAgent(client, instance, lease_duration_seconds=60)

        agent.beat()
        agent.beat()

        assert client.register.call_count == 2
        assert agent.reregistrations == 1

    def test_stop_cancels_registration(self, instance):
        client = Mock()
        agent = HeartbeatAgent(client, instance, interval_seconds=3600)
        agent.start()
        agent.stop()

        client.cancel.assert_called_once_with("ORDERS", "i-1")
        assert not agent.registered


# =============================================================================
# End-to-end
# =============================================================================

class TestEndToEnd:
    """Client against a real gateway served by TestClient."""

    @pytest.fixture
    def served(self, registry, clock):
        cache = QueryCache(registry, clock)
        gateway = RegistryGateway(registry, cache, clock=clock)
        http = TestClient(create_app(gateway))
        return DiscoveryClient("http://testserver", client_id="svc-1", session=http)

    def test_register_then_lookup(self, served):
        instance = InstanceInfo(instance_id="i-1", app_name="orders",
                                host_address="10.0.0.5", port=8080,
                                status=InstanceStatus.UP)
        record = served.register(instance)
        assert record.lease is not None

        # Read-your-writes: cache was never refreshed
        app = served.get_application("orders")
        assert [i.instance_id for i in app.instances] == ["i-1"]

    def test_agent_recovers_from_eviction(self, served, registry, clock):
        instance = InstanceInfo(instance_id="i-1", app_name="orders",
                                host_address="10.0.0.5", port=8080)
        agent = HeartbeatAgent(served, instance)
        agent.beat()

        clock.advance(91)
        registry.evict_expired_leases()
        assert registry.get_instance("orders", "i-1") is None

        agent.beat()
        assert agent.reregistrations == 1
        assert registry.get_instance("orders", "i-1") is not None
