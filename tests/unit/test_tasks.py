"""Unit tests for maintenance tasks and service wiring."""

import threading
import time
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import httpx

from app.config import settings
from app.core.metrics import configured_integrations, connected_integrations
from app.models import AuthState
from app.services.demo_ledger import DemoResourceFetcher, DemoTenantResolver
from app.services import factory
from app.services.factory import build_controller, close_http_client, get_http_client
from app.services.resource_fetcher import ResourceFetcher
from app.services.tenant_resolver import TenantResolver
from app.tasks.maintenance_tasks import (
    sweep_expired_auth_states,
    refresh_expiring_tokens,
    update_integration_gauges,
)


class TestMaintenanceTasks:
    """Test the periodic Celery tasks."""

    def test_sweep_expired_auth_states(self, db):
        # Setup
        db.add(AuthState(state="old" * 10, company_id=1, created_at=datetime.utcnow() - timedelta(hours=1)))
        db.add(AuthState(state="new" * 10, company_id=1, created_at=datetime.utcnow()))
        db.commit()

        # Execute
        removed = sweep_expired_auth_states()

        # Assert
        assert removed == 1
        db.expire_all()
        assert [s.state for s in db.query(AuthState).all()] == ["new" * 10]

    def test_refresh_expiring_tokens(self, services, stack_factory, fake_xero):
        """Expiring tokens are refreshed, rejected ones cleared, healthy ones skipped."""
        # Setup
        for company_id in (1, 2, 3):
            services.store.save_config(company_id, client_id="abc", callback_url="https://app/cb", client_secret="xyz")
        services.store.write_tokens(1, "access-a", "refresh-a", datetime.utcnow() + timedelta(minutes=1))
        services.store.write_tokens(2, "access-b", "refresh-b", datetime.utcnow() - timedelta(minutes=1))
        services.store.write_tokens(3, "access-c", "refresh-c", datetime.utcnow() + timedelta(hours=2))

        def token_responder(request):
            if b"refresh-b" in request.content:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "access-new", "refresh_token": "refresh-new", "expires_in": 1800})

        fake_xero.add("POST", fake_xero.TOKEN_URL, responder=token_responder)

        # Execute
        with patch("app.tasks.maintenance_tasks.build_controller", lambda session: stack_factory(session).controller):
            result = refresh_expiring_tokens()

        # Assert
        assert result == {"refreshed": 1, "cleared": 1, "failed": 0, "total": 2}
        assert services.store.get_tokens(1).access_token == "access-new"
        assert services.store.get_tokens(2) is None
        assert services.store.get_tokens(3).access_token == "access-c"

    def test_refresh_failure_counted_and_tokens_kept(self, services, stack_factory, fake_xero, connected_company):
        services.store.write_tokens(connected_company, "access-0", "refresh-0", datetime.utcnow())
        fake_xero.add("POST", fake_xero.TOKEN_URL, exception=httpx.ReadTimeout)

        with patch("app.tasks.maintenance_tasks.build_controller", lambda session: stack_factory(session).controller):
            result = refresh_expiring_tokens()

        assert result["failed"] == 1
        assert services.store.get_tokens(connected_company).access_token == "access-0"

    def test_update_integration_gauges(self, services, connected_company):
        services.store.save_config(2, client_id="abc", callback_url="https://app/cb", client_secret="xyz")

        result = update_integration_gauges()

        assert result == {"configured": 2, "connected": 1}
        assert configured_integrations._value.get() == 2
        assert connected_integrations._value.get() == 1


class TestBuildController:
    """Test service wiring."""

    def test_real_services_by_default(self, db, fake_xero, monkeypatch):
        monkeypatch.setattr(settings, "xero_demo_mode", False)

        controller = build_controller(db, http_client=fake_xero.client())

        assert isinstance(controller.resolver, TenantResolver)
        assert isinstance(controller.fetcher, ResourceFetcher)
        assert controller.resolver.fetcher is controller.fetcher
        assert controller.fetcher.api_base_url == settings.xero_api_base_url
        assert controller.demo_mode is False

    def test_demo_doubles_when_enabled(self, db, fake_xero, monkeypatch):
        monkeypatch.setattr(settings, "xero_demo_mode", True)

        controller = build_controller(db, http_client=fake_xero.client())

        assert isinstance(controller.resolver, DemoTenantResolver)
        assert isinstance(controller.fetcher, DemoResourceFetcher)
        assert controller.demo_mode is True

    def test_shared_http_client_created_once(self, monkeypatch):
        # Setup
        created = []

        def slow_client(**kwargs):
            time.sleep(0.05)
            client = Mock()
            created.append(client)
            return client

        monkeypatch.setattr(factory, "_http_client", None)
        monkeypatch.setattr(factory.httpx, "Client", slow_client)
        barrier = threading.Barrier(4)
        results = []

        def first_request():
            barrier.wait()
            results.append(get_http_client())

        # Execute
        threads = [threading.Thread(target=first_request) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # Assert
        assert len(created) == 1
        assert all(client is created[0] for client in results)

        close_http_client()
        created[0].close.assert_called_once()
        assert factory._http_client is None
