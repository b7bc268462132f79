"""Unit tests for the rate-limited resource fetcher."""

import itertools
import threading
from datetime import datetime, timedelta

import httpx
import pytest

from app.core.exceptions import (
    RateLimitExceededError,
    UnauthorizedError,
    ReauthorizationRequiredError,
    RemoteAPIError,
    UnknownResourceError,
)
from app.services.resource_fetcher import (
    build_query,
    collection_key_for,
    endpoint_for,
    extract_collection,
    MAX_PAGE_SIZE,
)

TENANT = "tenant-a"


def invoices_url(fake_xero):
    return f"{fake_xero.API_BASE_URL}/Invoices"


class TestFetch:
    """Test the fetch path, including retries."""

    def test_success_sends_auth_and_tenant_headers(self, services, connected_company, fake_xero):
        # Setup
        fake_xero.add_resource("Invoices", json={"Invoices": [{"InvoiceID": "i-1"}]})

        # Execute
        document = services.fetcher.fetch(connected_company, TENANT, "invoices", {"page": 2})

        # Assert
        assert document == {"Invoices": [{"InvoiceID": "i-1"}]}
        (request,) = fake_xero.requests
        assert request.headers["Authorization"] == "Bearer access-0"
        assert request.headers["Xero-tenant-id"] == TENANT
        assert request.headers["Accept"] == "application/json"
        assert request.url.params["page"] == "2"

    def test_429_then_success_waits_cooldown_and_retries_once(self, services, connected_company, fake_xero):
        # Setup
        fake_xero.add_resource("Invoices", status_code=429)
        fake_xero.add_resource("Invoices", json={"Invoices": []})

        # Execute
        document = services.fetcher.fetch(connected_company, TENANT, "invoices")

        # Assert
        assert document == {"Invoices": []}
        assert len(fake_xero.calls(invoices_url(fake_xero))) == 2
        services.sleep.assert_called_once_with(2.0)

    def test_429_twice_raises_rate_limited(self, services, connected_company, fake_xero):
        fake_xero.add_resource("Invoices", status_code=429, headers={"Retry-After": "17"})

        with pytest.raises(RateLimitExceededError) as exc_info:
            services.fetcher.fetch(connected_company, TENANT, "invoices")

        assert exc_info.value.retry_after == 17
        assert len(fake_xero.calls(invoices_url(fake_xero))) == 2

    def test_429_without_header_uses_cooldown(self, services, connected_company, fake_xero):
        fake_xero.add_resource("Invoices", status_code=429)

        with pytest.raises(RateLimitExceededError) as exc_info:
            services.fetcher.fetch(connected_company, TENANT, "invoices")

        assert exc_info.value.retry_after == 2

    def test_401_refreshes_and_retries_once(self, services, connected_company, fake_xero):
        # Setup
        fake_xero.add_resource("Invoices", status_code=401)
        fake_xero.add_resource("Invoices", json={"Invoices": [{"InvoiceID": "i-1"}]})
        fake_xero.add_token("access-1", "refresh-1")

        # Execute
        document = services.fetcher.fetch(connected_company, TENANT, "invoices")

        # Assert
        assert document["Invoices"][0]["InvoiceID"] == "i-1"
        data_calls = fake_xero.calls(invoices_url(fake_xero))
        assert len(data_calls) == 2
        assert data_calls[1].headers["Authorization"] == "Bearer access-1"
        assert len(fake_xero.calls(fake_xero.TOKEN_URL)) == 1

    def test_401_after_refresh_is_unauthorized(self, services, connected_company, fake_xero):
        fake_xero.add_resource("Invoices", status_code=401)
        fake_xero.add_token("access-1", "refresh-1")

        with pytest.raises(UnauthorizedError):
            services.fetcher.fetch(connected_company, TENANT, "invoices")

        assert len(fake_xero.calls(invoices_url(fake_xero))) == 2

    def test_401_with_rejected_refresh_requires_reauthorization(self, services, connected_company, fake_xero):
        """Refresh answered with invalid_grant: tokens cleared, no retry."""
        # Setup
        fake_xero.add_resource("Invoices", status_code=401)
        fake_xero.add_token_error("invalid_grant")

        # Execute
        with pytest.raises(ReauthorizationRequiredError):
            services.fetcher.fetch(connected_company, TENANT, "invoices")

        # Assert
        assert services.store.get_tokens(connected_company) is None
        assert len(fake_xero.calls(invoices_url(fake_xero))) == 1

    def test_401_with_refresh_timeout_keeps_tokens(self, services, connected_company, fake_xero):
        fake_xero.add_resource("Invoices", status_code=401)
        fake_xero.add("POST", fake_xero.TOKEN_URL, exception=httpx.ReadTimeout)

        with pytest.raises(UnauthorizedError) as exc_info:
            services.fetcher.fetch(connected_company, TENANT, "invoices")

        assert exc_info.value.details == {"refresh_error": "refresh_timeout"}
        assert services.store.get_tokens(connected_company).access_token == "access-0"

    def test_not_found_surfaces_remote_status_and_body(self, services, connected_company, fake_xero):
        fake_xero.add_resource("Invoices", status_code=404, json={"Message": "not here"})

        with pytest.raises(RemoteAPIError) as exc_info:
            services.fetcher.fetch(connected_company, TENANT, "invoices")

        assert exc_info.value.remote_status == 404
        assert exc_info.value.remote_body == {"Message": "not here"}
        assert exc_info.value.status_code == 404
        assert len(fake_xero.requests) == 1

    def test_server_error_not_retried(self, services, connected_company, fake_xero):
        fake_xero.add_resource("Invoices", status_code=500, json={"Message": "boom"})

        with pytest.raises(RemoteAPIError):
            services.fetcher.fetch(connected_company, TENANT, "invoices")

        assert len(fake_xero.requests) == 1
        services.sleep.assert_not_called()

    def test_network_error_is_remote_error(self, services, connected_company, fake_xero):
        fake_xero.add_resource("Invoices", exception=httpx.ConnectError)

        with pytest.raises(RemoteAPIError) as exc_info:
            services.fetcher.fetch(connected_company, TENANT, "invoices")

        assert exc_info.value.remote_status is None

    def test_unknown_resource_makes_no_call(self, services, connected_company, fake_xero):
        with pytest.raises(UnknownResourceError) as exc_info:
            services.fetcher.fetch(connected_company, TENANT, "payroll")

        assert "invoices" in exc_info.value.details["valid_resources"]
        assert fake_xero.requests == []

    def test_no_tokens_requires_reauthorization(self, services, configured_company, fake_xero):
        with pytest.raises(ReauthorizationRequiredError):
            services.fetcher.fetch(configured_company, TENANT, "invoices")

        assert fake_xero.requests == []

    def test_concurrent_refreshes_leave_one_whole_token_set(self, db, connected_company, fake_xero, stack_factory, session_factory):
        """Two fetches both see a rejected token and refresh; the stored set comes from one response."""
        # Setup
        counter = itertools.count(1)
        counter_lock = threading.Lock()

        def token_responder(request):
            with counter_lock:
                n = next(counter)
            return httpx.Response(200, json={
                "access_token": f"access-{n}",
                "refresh_token": f"refresh-{n}",
                "expires_in": 1000 * n,
            })

        def invoices_responder(request):
            if request.headers["Authorization"] == "Bearer access-0":
                return httpx.Response(401)
            return httpx.Response(200, json={"Invoices": []})

        fake_xero.add("POST", fake_xero.TOKEN_URL, responder=token_responder)
        fake_xero.add("GET", invoices_url(fake_xero), responder=invoices_responder)
        barrier = threading.Barrier(2)
        errors = []

        def worker():
            session = session_factory()
            try:
                stack = stack_factory(session)
                barrier.wait()
                stack.fetcher.fetch(connected_company, TENANT, "invoices", access_token="access-0")
            except Exception as e:
                errors.append(e)
            finally:
                session.close()

        # Execute
        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # Assert
        assert errors == []
        assert len(fake_xero.calls(fake_xero.TOKEN_URL)) == 2
        stored = stack_factory(db).store.get_tokens(connected_company)
        n = int(stored.access_token.split("-")[1])
        assert stored.refresh_token == f"refresh-{n}"
        expected_expiry = datetime.utcnow() + timedelta(seconds=1000 * n)
        assert abs((stored.expires_at - expected_expiry).total_seconds()) < 60


class TestQueryHelpers:
    """Test parameter filtering and response unwrapping."""

    def test_page_size_capped(self):
        assert build_query({"pageSize": 500})["pageSize"] == str(MAX_PAGE_SIZE)
        assert build_query({"pageSize": "25"})["pageSize"] == "25"

    def test_unsupported_and_empty_params_dropped(self):
        query = build_query({"where": "Status==\"PAID\"", "order": "", "secret": "x", "page": None})

        assert query == {"where": "Status==\"PAID\""}

    def test_non_numeric_page_size_dropped(self):
        assert build_query({"pageSize": "lots"}) == {}

    def test_boolean_rendered_lowercase(self):
        assert build_query({"includeArchived": True}) == {"includeArchived": "true"}

    def test_endpoint_mapping(self):
        assert endpoint_for("bank-transactions") == "BankTransactions"
        assert endpoint_for("organization") == "Organisation"

    def test_collection_key_is_plural_name(self):
        assert collection_key_for("organization") == "Organisations"
        assert collection_key_for("invoices") == "Invoices"

    def test_organisation_collection_extracted(self):
        document = {"Organisations": [{"Name": "Acme"}]}

        assert extract_collection(document, "organization") == [{"Name": "Acme"}]

    @pytest.mark.parametrize("document,expected", [
        ({"Invoices": [{"InvoiceID": "1"}, "junk"]}, [{"InvoiceID": "1"}]),
        ({"Invoices": {"InvoiceID": "1"}}, [{"InvoiceID": "1"}]),
        ({"Other": []}, None),
        ([{"InvoiceID": "1"}], [{"InvoiceID": "1"}]),
        ("unexpected", None),
        (None, None),
    ])
    def test_extract_collection_tolerates_shapes(self, document, expected):
        assert extract_collection(document, "invoices") == expected
