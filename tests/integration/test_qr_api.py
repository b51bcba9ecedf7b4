"""Integration tests for QR payments and the payment event webhook."""

import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from firefund.core.database import db_service
from firefund.core.models import (
    QRInteractionDB, TeamDB, TransactionDB, Role, utcnow
)

PAYMENT_LINK = "https://buy.stripe.com/test_nord"


@pytest.fixture
def make_qr_team(make_team, make_user):
    """Team with a payment link and a team lead; returns (team_id, lead_id, lead headers)"""
    async def _make_qr_team(name="Équipe Nord", payment_link_url=PAYMENT_LINK, lead_email="chef@caserne.fr"):
        team_id = await make_team(name=name, payment_link_url=payment_link_url)
        lead_id, headers = await make_user(lead_email, role=Role.TEAM_LEAD, team_id=team_id,
                                           full_name="Chef Nord")
        async with db_service.get_session() as session:
            (await session.get(TeamDB, team_id)).chef_id = lead_id
        return team_id, lead_id, headers

    return _make_qr_team


async def initiate(client, team_id, **headers):
    response = await client.post("/api/v1/qr/initiate", json={"team_id": team_id}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["interaction_id"]


def checkout_event(event_type, interaction_id=None, session_id="cs_test_1", amount_total=2500,
                   name="Jeanne Roux", email="jeanne@example.fr", metadata=None):
    customer = {"name": name, "email": email} if (name or email) else None
    return {
        "id": "evt_1",
        "type": event_type,
        "data": {"object": {
            "id": session_id,
            "client_reference_id": interaction_id,
            "metadata": metadata or {},
            "customer_details": customer,
            "amount_total": amount_total,
        }},
    }


async def transactions_for_team(team_id):
    async with db_service.get_session() as session:
        result = await session.execute(select(TransactionDB).where(TransactionDB.team_id == team_id))
        return result.scalars().all()


class TestInitiate:
    async def test_opens_pending_interaction(self, client, make_qr_team):
        team_id, _, _ = await make_qr_team()
        before = utcnow()

        response = await client.post(
            "/api/v1/qr/initiate",
            json={"team_id": team_id, "user_agent": "Mozilla/5.0 (iPhone)"},
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
        )

        assert response.status_code == 201, response.text
        data = response.json()
        assert data["status"] == "pending"
        assert data["interaction_id"].startswith(f"qr_{team_id.replace('-', '')[:8]}_")
        assert data["payment_link_url"] == f"{PAYMENT_LINK}?client_reference_id={data['interaction_id']}"
        expires_at = datetime.fromisoformat(data["expires_at"])
        assert before + timedelta(minutes=29) < expires_at <= utcnow() + timedelta(minutes=30)

        async with db_service.get_session() as session:
            result = await session.execute(
                select(QRInteractionDB).where(QRInteractionDB.interaction_id == data["interaction_id"])
            )
            interaction = result.scalar_one()
        assert interaction.ip_address == "203.0.113.7"
        assert interaction.user_agent == "Mozilla/5.0 (iPhone)"

    async def test_unknown_team(self, client):
        response = await client.post("/api/v1/qr/initiate", json={"team_id": "no-such-team"})

        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    async def test_team_without_payment_link(self, client, make_qr_team):
        team_id, _, _ = await make_qr_team(payment_link_url=None)

        response = await client.post("/api/v1/qr/initiate", json={"team_id": team_id})

        assert response.status_code == 409
        assert "payment link" in response.json()["error"]

    async def test_team_without_lead(self, client, make_team):
        team_id = await make_team(payment_link_url=PAYMENT_LINK)

        response = await client.post("/api/v1/qr/initiate", json={"team_id": team_id})

        assert response.status_code == 409

    async def test_team_id_required(self, client):
        response = await client.post("/api/v1/qr/initiate", json={})

        assert response.status_code == 422


class TestPaymentEvents:
    async def test_completed_checkout_records_card_donation(self, client, make_qr_team, n8n_stub):
        team_id, lead_id, headers = await make_qr_team()
        interaction_id = await initiate(client, team_id)

        response = await client.post("/api/v1/webhooks/payment",
                                     json=checkout_event("checkout.session.completed", interaction_id))

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["received"] is True
        assert data["duplicate"] is False
        assert data["receipt"]["success"] is True
        assert data["receipt"]["receipt_number"].startswith("RECU-")

        [transaction] = await transactions_for_team(team_id)
        assert transaction.id == data["transaction_id"]
        assert transaction.user_id == lead_id
        assert transaction.amount == 25.0
        assert transaction.calendars_given == 1
        assert transaction.payment_method == "card"
        assert transaction.donator_name == "Jeanne Roux"
        assert transaction.donator_email == "jeanne@example.fr"
        assert transaction.status == "pending"

        assert len(n8n_stub.requests) == 1
        sent = json.loads(n8n_stub.requests[0].content)
        assert sent["receipt_data"]["donator_email"] == "jeanne@example.fr"

        interaction = (await client.get(f"/api/v1/qr/{interaction_id}", headers=headers)).json()
        assert interaction["status"] == "completed"
        assert interaction["transaction_id"] == transaction.id
        assert interaction["amount"] == 25.0
        assert interaction["completed_at"] is not None

    async def test_repeated_event_does_not_duplicate(self, client, make_qr_team, n8n_stub):
        team_id, _, _ = await make_qr_team()
        interaction_id = await initiate(client, team_id)
        event = checkout_event("checkout.session.completed", interaction_id)

        first = (await client.post("/api/v1/webhooks/payment", json=event)).json()
        second = (await client.post("/api/v1/webhooks/payment", json=event)).json()

        assert second["duplicate"] is True
        assert second["transaction_id"] == first["transaction_id"]
        assert second["receipt"] is None
        assert len(await transactions_for_team(team_id)) == 1
        assert len(n8n_stub.requests) == 1

    async def test_anonymous_donor_from_metadata(self, client, make_qr_team, n8n_stub):
        team_id, _, _ = await make_qr_team()
        interaction_id = await initiate(client, team_id)

        response = await client.post("/api/v1/webhooks/payment", json=checkout_event(
            "checkout.session.completed", None, amount_total=None, name=None, email=None,
            metadata={"interaction_id": interaction_id}
        ))

        assert response.status_code == 200, response.text
        assert response.json()["receipt"] is None
        [transaction] = await transactions_for_team(team_id)
        assert transaction.donator_name == "Donateur anonyme"
        assert transaction.donator_email is None
        assert transaction.amount == 10.0
        assert n8n_stub.requests == []

    async def test_receipt_failure_keeps_transaction(self, client, make_qr_team, n8n_stub):
        n8n_stub.status_code = 500
        team_id, _, _ = await make_qr_team()
        interaction_id = await initiate(client, team_id)

        response = await client.post("/api/v1/webhooks/payment",
                                     json=checkout_event("checkout.session.completed", interaction_id))

        assert response.status_code == 200
        assert response.json()["receipt"]["success"] is False
        [transaction] = await transactions_for_team(team_id)
        assert transaction.receipt_status == "failed"

    async def test_expired_checkout(self, client, make_qr_team):
        team_id, _, headers = await make_qr_team()
        interaction_id = await initiate(client, team_id)
        event = checkout_event("checkout.session.expired", interaction_id)

        first = (await client.post("/api/v1/webhooks/payment", json=event)).json()
        second = (await client.post("/api/v1/webhooks/payment", json=event)).json()

        assert first == {"received": True, "expired": True}
        assert second == {"received": True, "expired": False}
        interaction = (await client.get(f"/api/v1/qr/{interaction_id}", headers=headers)).json()
        assert interaction["status"] == "expired"
        assert await transactions_for_team(team_id) == []

    async def test_other_event_types_ignored(self, client):
        response = await client.post("/api/v1/webhooks/payment",
                                     json=checkout_event("payment_intent.created", "qr_unknown"))

        assert response.status_code == 200
        assert response.json() == {"received": True}

    async def test_unknown_interaction(self, client):
        response = await client.post("/api/v1/webhooks/payment",
                                     json=checkout_event("checkout.session.completed", "qr_unknown"))

        assert response.status_code == 404

    async def test_missing_interaction_id(self, client):
        response = await client.post("/api/v1/webhooks/payment",
                                     json=checkout_event("checkout.session.completed", None))

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"


class TestInteractionStatus:
    async def test_pending_past_expiry_reads_expired(self, client, make_qr_team):
        team_id, _, headers = await make_qr_team()
        interaction_id = await initiate(client, team_id)
        async with db_service.get_session() as session:
            result = await session.execute(
                select(QRInteractionDB).where(QRInteractionDB.interaction_id == interaction_id)
            )
            result.scalar_one().expires_at = utcnow() - timedelta(minutes=1)

        response = await client.get(f"/api/v1/qr/{interaction_id}", headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "expired"

    async def test_other_team_forbidden(self, client, make_qr_team, make_team, make_user):
        team_id, _, _ = await make_qr_team()
        interaction_id = await initiate(client, team_id)
        other_team = await make_team(name="Équipe Sud")
        _, other_headers = await make_user("sud@caserne.fr", team_id=other_team)
        _, treasurer_headers = await make_user("tresor@caserne.fr", role=Role.TREASURER)

        assert (await client.get(f"/api/v1/qr/{interaction_id}", headers=other_headers)).status_code == 403
        assert (await client.get(f"/api/v1/qr/{interaction_id}", headers=treasurer_headers)).status_code == 200

    async def test_requires_auth(self, client):
        response = await client.get("/api/v1/qr/qr_anything")

        assert response.status_code == 401
