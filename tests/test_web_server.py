"""
Tests for the FastAPI surface.

The app is exercised without entering its lifespan, so no event
forwarding tasks run; every request goes straight to the engine.
"""
import pytest
from fastapi.testclient import TestClient

from conftest import FakeVenue
from web_server import create_app, resolve_dashboard_secret

AUTH = {"Authorization": "Bearer test-secret"}


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine, secret="test-secret"))


def load_strong_signal(engine, channel, symbol="R_100"):
    FakeVenue(engine, channel).history(symbol, [7] * 350 + [0] * 150)
    engine.run_analysis()


class TestAuth:
    def test_health_is_public(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_token(self, client):
        assert client.get("/api/status").status_code == 401

    def test_wrong_token(self, client):
        response = client.get("/api/status", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_valid_token(self, client):
        response = client.get("/api/status", headers=AUTH)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["running_bots"] == 0

    def test_secret_from_environment(self, monkeypatch):
        monkeypatch.setenv("DASHBOARD_SECRET", "from-env")
        assert resolve_dashboard_secret() == "from-env"
        assert resolve_dashboard_secret("explicit") == "explicit"

    def test_generated_secret(self, monkeypatch):
        monkeypatch.delenv("DASHBOARD_SECRET", raising=False)
        assert len(resolve_dashboard_secret()) >= 32


class TestSnapshots:
    def test_signals(self, client, engine, channel):
        load_strong_signal(engine, channel)

        data = client.get("/api/signals", headers=AUTH).json()["data"]
        assert data["count"] == 1
        signal = data["signals"]["R_100"]
        assert signal["strong_signal_type"] == "Strong Over 3"
        assert signal["entry_points_over3"] == [0]

    def test_unknown_bot(self, client):
        assert client.get("/api/bots/nope", headers=AUTH).status_code == 404

    def test_notifications(self, client, engine, channel):
        load_strong_signal(engine, channel)
        data = client.get("/api/notifications?limit=5", headers=AUTH).json()["data"]
        assert data["notifications"][-1]["title"] == "Strong Signal"

    def test_recovery(self, client):
        data = client.get("/api/recovery", headers=AUTH).json()["data"]
        assert data == {"recovery": {}, "auto_start_allowed": True}


class TestManualBotRoutes:
    def test_start_and_stop(self, client, channel):
        response = client.post("/api/manual-bot/start", headers=AUTH, json={
            "market": "R_100",
            "prediction_type": "over",
            "last_digit_prediction": 3,
            "initial_stake": 1.5,
        })
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "running"
        assert channel.buys()[-1]["parameters"]["amount"] == 1.5

        assert client.post("/api/manual-bot/reset", headers=AUTH).status_code == 409
        assert client.post("/api/manual-bot/stop", headers=AUTH).json()["data"] == {"stopped": True}
        assert client.post("/api/manual-bot/reset", headers=AUTH).status_code == 200

    @pytest.mark.parametrize("body", [
        {"market": "R_100", "prediction_type": "sideways"},
        {"market": "R_100", "initial_stake": 0},
        {"market": "R_100", "colour": "red"},
    ])
    def test_invalid_config(self, client, channel, body):
        response = client.post("/api/manual-bot/start", headers=AUTH, json=body)
        assert response.status_code == 400
        assert channel.buys() == []

    def test_invalid_json(self, client):
        response = client.post("/api/manual-bot/start", headers={**AUTH, "Content-Type": "application/json"},
                               content="{not json")
        assert response.status_code == 400


class TestSignalBotRoutes:
    def test_start(self, client, engine, channel):
        load_strong_signal(engine, channel)

        response = client.post("/api/signal-bots", headers=AUTH, json={"symbol": "R_100"})
        assert response.status_code == 200
        bot_id = response.json()["data"]["id"]
        assert bot_id.startswith("signal-R_100-")

        duplicate = client.post("/api/signal-bots", headers=AUTH, json={"symbol": "R_100"})
        assert duplicate.status_code == 409

        stopped = client.post(f"/api/signal-bots/{bot_id}/stop", headers=AUTH)
        assert stopped.json()["data"]["status"] == "stopped"

    def test_missing_symbol(self, client):
        assert client.post("/api/signal-bots", headers=AUTH, json={}).status_code == 400

    def test_no_snapshot_yet(self, client):
        assert client.post("/api/signal-bots", headers=AUTH, json={"symbol": "R_50"}).status_code == 400

    def test_not_authorized(self, client, engine, channel):
        engine.authorizer = lambda snapshot: False
        load_strong_signal(engine, channel)

        response = client.post("/api/signal-bots", headers=AUTH, json={"symbol": "R_100"})
        assert response.status_code == 403
        assert channel.buys() == []

    def test_stop_unknown(self, client):
        assert client.post("/api/signal-bots/nope/stop", headers=AUTH).status_code == 404

    def test_reset(self, client, engine, channel):
        load_strong_signal(engine, channel)
        client.post("/api/signal-bots", headers=AUTH, json={"symbol": "R_100"})

        response = client.post("/api/signal-bots/reset", headers=AUTH)
        assert response.json()["data"] == {"removed": 1}


class TestSettingsRoutes:
    def test_signal_defaults(self, client, engine):
        response = client.put("/api/signal-defaults", headers=AUTH, json={"initial_stake": 2.5})
        assert response.status_code == 200
        assert response.json()["data"]["initial_stake"] == 2.5
        assert engine.signal_defaults.initial_stake == 2.5

    @pytest.mark.parametrize("body", [
        {"martingale_factor": 1.0},
        {"stop_loss_consecutive": 0},
        {"leverage": 100},
    ])
    def test_signal_defaults_rejected(self, client, engine, body):
        response = client.put("/api/signal-defaults", headers=AUTH, json=body)
        assert response.status_code == 400
        assert engine.signal_defaults.martingale_factor == 2.1

    def test_auto_strategy_toggle(self, client, engine):
        response = client.put("/api/auto-strategy", headers=AUTH, json={"enabled": True})
        assert response.json()["data"] == {"enabled": True}
        assert engine.auto_strategy_enabled is True

        assert client.put("/api/auto-strategy", headers=AUTH, json={"enabled": "yes"}).status_code == 400

    def test_hard_stop(self, client, engine):
        engine.set_auto_strategy_enabled(True)
        response = client.post("/api/auto-bots/hard-stop", headers=AUTH)
        assert response.json()["data"] == {"stopped": 0}
        assert engine.auto_strategy_enabled is False

    def test_auto_reset(self, client):
        assert client.post("/api/auto-bots/reset", headers=AUTH).json()["data"] == {"reset": True}
