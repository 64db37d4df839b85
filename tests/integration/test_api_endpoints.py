"""
Integration tests for API endpoints.
"""
from datetime import date, timedelta
from decimal import Decimal

import pytest

from finpulse.infrastructure.stores import TransactionFeed
from tests.factories.financial_factory import make_account, make_transaction, monthly_series

API = "/api/v1"


def days_ago(*offsets):
    today = date.today()
    return [today - timedelta(days=offset) for offset in offsets]


@pytest.mark.integration
class TestHealthEndpoints:
    """Integration tests for health check endpoints."""

    def test_basic_health_check(self, client):
        """Test basic health endpoint."""
        response = client.get(f"{API}/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["storage_backend"] == "memory"
        assert "timestamp" in data
        assert "version" in data

    def test_readiness_check(self, client):
        """Test readiness reads the document store."""
        response = client.get(f"{API}/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"
        assert response.json()["storage_response_ms"] >= 0

    def test_request_id_headers(self, client):
        """Test request IDs are echoed and timing is reported."""
        response = client.get(f"{API}/health", headers={"X-Request-ID": "req-42"})

        assert response.headers["x-request-id"] == "req-42"
        assert "x-process-time" in response.headers


@pytest.mark.integration
class TestUserIdentification:
    """Integration tests for the X-User-ID header."""

    def test_missing_header(self, client):
        """Test user-scoped endpoints require the header."""
        response = client.get(f"{API}/recurring")

        assert response.status_code == 422
        data = response.json()
        assert data["error"]["code"] == "VALIDATION_ERROR"
        assert data["meta"]["path"] == f"{API}/recurring"
        assert "request_id" in data["meta"]

    def test_header_with_path_separator(self, client):
        """Test user IDs that would escape their document path are rejected."""
        response = client.get(f"{API}/recurring", headers={"X-User-ID": "a/b"})
        assert response.status_code == 422


@pytest.mark.integration
class TestRecurringEndpoints:
    """Integration tests for recurring pattern endpoints."""

    def test_manual_pattern_lifecycle(self, client, auth_headers):
        """Test create, read, override and delete of a declared pattern."""
        response = client.post(f"{API}/recurring", headers=auth_headers, json={
            "name": "Landlord Rent",
            "amount": "1200.00",
            "frequency": "monthly",
            "category": "Rent",
        })
        assert response.status_code == 201
        pattern = response.json()
        assert pattern["source"] == "user_declared"
        assert pattern["normalized_merchant_key"] == "landlord rent"

        overview = client.get(f"{API}/recurring", headers=auth_headers).json()
        assert [p["id"] for p in overview["expenses"]] == [pattern["id"]]
        assert Decimal(overview["monthly_expenses"]) == Decimal("1200.00")

        response = client.patch(
            f"{API}/recurring/{pattern['id']}", headers=auth_headers, json={"average_amount": "1250.00"}
        )
        assert response.status_code == 200
        assert Decimal(response.json()["average_amount"]) == Decimal("1250.00")
        assert response.json()["has_manual_override"] is True

        response = client.delete(f"{API}/recurring/{pattern['id']}", headers=auth_headers)
        assert response.status_code == 204

        response = client.get(f"{API}/recurring/{pattern['id']}", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

        suppressed = client.get(f"{API}/recurring/suppressed", headers=auth_headers).json()
        assert "landlord rent" in suppressed["entries"]

        response = client.request(
            "DELETE", f"{API}/recurring/suppressed", headers=auth_headers, json={"keys": ["landlord rent"]}
        )
        assert response.json() == {"removed": 1}

    def test_duplicate_manual_pattern(self, client, auth_headers):
        """Test a second pattern for the same merchant conflicts."""
        body = {"name": "Gym Club", "amount": "30.00", "frequency": "monthly"}
        assert client.post(f"{API}/recurring", headers=auth_headers, json=body).status_code == 201

        response = client.post(f"{API}/recurring", headers=auth_headers, json=body)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT_ERROR"
        assert response.json()["error"]["retryable"] is False

    def test_invalid_manual_pattern(self, client, auth_headers):
        """Test request bodies are validated."""
        response = client.post(f"{API}/recurring", headers=auth_headers, json={
            "name": "Gym Club", "amount": "-5", "frequency": "monthly"
        })
        assert response.status_code == 422

    async def test_detection_and_suggestion_review(self, async_client, auth_headers, memory_store, user_id):
        """Test detection creates a pattern and a suggestion that can be denied."""
        feed = TransactionFeed(memory_store)
        await feed.save_transactions(user_id, monthly_series("Netflix", "15.99", days_ago(95, 65, 35, 5)))
        await feed.save_transactions(user_id, monthly_series("Gym Club", "30.00", days_ago(70, 40, 10)))

        response = await async_client.post(f"{API}/recurring/detect", headers=auth_headers)
        assert response.status_code == 200
        summary = response.json()
        assert summary["patterns_created"] == 1
        assert summary["suggestions_created"] == 1

        overview = (await async_client.get(f"{API}/recurring", headers=auth_headers)).json()
        assert [p["display_name"] for p in overview["expenses"]] == ["Netflix"]

        suggestions = (await async_client.get(f"{API}/recurring/suggestions", headers=auth_headers)).json()
        assert [s["normalized_merchant_key"] for s in suggestions] == ["gym club"]

        response = await async_client.post(f"{API}/recurring/suggestions/review", headers=auth_headers, json={
            "ids": [suggestions[0]["id"]],
            "action": "deny",
            "reason": "not_recurring",
        })
        assert response.json()["succeeded"] == 1

        suppressed = (await async_client.get(f"{API}/recurring/suppressed", headers=auth_headers)).json()
        assert "gym club" in suppressed["entries"]

        again = (await async_client.post(f"{API}/recurring/detect", headers=auth_headers)).json()
        assert again["suppressed_skipped"] == 1
        assert again["suggestions_created"] == 0


@pytest.mark.integration
class TestAnomalyEndpoints:
    """Integration tests for anomaly endpoints."""

    async def seed_cafe(self, memory_store, user_id):
        feed = TransactionFeed(memory_store)
        history = [
            make_transaction(name="Corner Cafe", amount=Decimal(amount), date=day)
            for amount, day in zip(["50.00", "52.00", "48.00", "51.00"], days_ago(41, 34, 27, 20))
        ]
        spike = make_transaction(name="Corner Cafe", amount=Decimal("500.00"), date=days_ago(1)[0])
        await feed.save_transactions(user_id, history + [spike])
        return spike

    async def test_baselines_and_detection(self, async_client, auth_headers, memory_store, user_id):
        """Test a spike over the baseline is reported and can be dismissed."""
        spike = await self.seed_cafe(memory_store, user_id)

        response = await async_client.post(f"{API}/anomalies/baselines", headers=auth_headers)
        assert response.json()["baselines"] == 1
        assert response.json()["transactions_used"] == 4

        report = (await async_client.post(f"{API}/anomalies/detect", headers=auth_headers)).json()
        assert report["saved"] == 1
        anomaly = report["anomalies"][0]
        assert anomaly["anomaly_type"] == "amount_outlier"
        assert anomaly["severity"] == "critical"
        assert anomaly["transaction_id"] == spike.id

        response = await async_client.patch(
            f"{API}/anomalies/{anomaly['id']}",
            headers=auth_headers,
            json={"status": "dismissed", "feedback": "expected"}
        )
        assert response.status_code == 200
        assert response.json()["false_positive"] is True

        dismissed = (await async_client.get(
            f"{API}/anomalies", headers=auth_headers, params={"status": "dismissed"}
        )).json()
        assert [a["id"] for a in dismissed] == [anomaly["id"]]

    async def test_detect_without_saving(self, async_client, auth_headers, memory_store, user_id):
        """Test save=false reports without storing."""
        await self.seed_cafe(memory_store, user_id)

        report = (await async_client.post(
            f"{API}/anomalies/detect", headers=auth_headers, params={"save": "false"}
        )).json()

        assert len(report["anomalies"]) == 1
        assert report["saved"] == 0
        assert (await async_client.get(f"{API}/anomalies", headers=auth_headers)).json() == []

    def test_unknown_anomaly(self, client, auth_headers):
        """Test updating a missing anomaly is a 404."""
        response = client.patch(f"{API}/anomalies/missing", headers=auth_headers, json={"status": "resolved"})
        assert response.status_code == 404


@pytest.mark.integration
class TestCashFlowEndpoints:
    """Integration tests for forecast and learning endpoints."""

    async def test_forecast(self, async_client, auth_headers, memory_store, user_id):
        """Test a forecast over a declared rent payment."""
        await TransactionFeed(memory_store).save_accounts(user_id, [make_account(balance=Decimal("1000.00"))])
        await async_client.post(f"{API}/recurring", headers=auth_headers, json={
            "name": "Landlord Rent",
            "amount": "500.00",
            "frequency": "monthly",
            "next_date": (date.today() + timedelta(days=10)).isoformat(),
        })

        response = await async_client.get(f"{API}/cash-flow/forecast", headers=auth_headers, params={"days": 30})

        assert response.status_code == 200
        snapshot = response.json()
        assert len(snapshot["daily_projected_balances"]) == 31
        assert Decimal(snapshot["daily_projected_balances"][0]["balance"]) == Decimal("1000.00")
        assert Decimal(snapshot["projected_end_balance"]) == Decimal("500.00")
        assert snapshot["insufficient_data"] is False

    async def test_stored_forecast_and_learning(self, async_client, auth_headers):
        """Test storing a forecast and running learning stages."""
        response = await async_client.get(
            f"{API}/cash-flow/forecast", headers=auth_headers, params={"store": "true", "days": 7}
        )
        assert response.json()["insufficient_data"] is True

        status = (await async_client.get(f"{API}/cash-flow/learn", headers=auth_headers)).json()
        assert status["current_multiplier"] == 1.0
        assert status["snapshots_pending_comparison"] == 0

        result = (await async_client.post(
            f"{API}/cash-flow/learn", headers=auth_headers, json={"action": "compare_actuals"}
        )).json()
        assert result["action"] == "compare_actuals"
        assert result["comparison"]["snapshots_compared"] == 0
        assert result["accuracy"] is None

        cycle = (await async_client.post(f"{API}/cash-flow/learn", headers=auth_headers, json={})).json()
        assert cycle["action"] == "full_cycle"
        assert cycle["accuracy"]["insufficient_data"] is True

    def test_invalid_horizon(self, client, auth_headers):
        """Test the horizon is bounded."""
        response = client.get(f"{API}/cash-flow/forecast", headers=auth_headers, params={"days": 0})
        assert response.status_code == 422


@pytest.mark.integration
class TestPreferenceEndpoints:
    """Integration tests for preference endpoints."""

    def test_get_and_update(self, client, auth_headers):
        """Test defaults and a section replacement."""
        defaults = client.get(f"{API}/preferences", headers=auth_headers).json()
        assert defaults["version"] == 0
        assert defaults["forecast"]["horizon_days"] == 30

        response = client.put(f"{API}/preferences", headers=auth_headers, json={
            "forecast": {"horizon_days": 45}
        })
        assert response.status_code == 200
        assert response.json()["version"] == 1
        assert response.json()["forecast"]["horizon_days"] == 45

    def test_empty_update(self, client, auth_headers):
        """Test an update with no sections is rejected."""
        response = client.put(f"{API}/preferences", headers=auth_headers, json={})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
