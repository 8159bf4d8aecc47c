"""Public tracking page behind the order token."""

import pytest

API = "/api/v1"


async def quoted_order(http, admin_headers, client_headers) -> dict:
    created = await http.post(f"{API}/client/orders", json={"title": "UPS 200kVA"}, headers=client_headers)
    order_id = created.json()["data"]["id"]
    sent = await http.post(
        f"{API}/orders/{order_id}/quotations",
        json={"total_amount": "12000", "file_url": "/uploads/q/ups.pdf"},
        headers=admin_headers,
    )
    return sent.json()["data"]


class TestTracking:
    @pytest.mark.asyncio
    async def test_no_login_needed(self, http, admin_headers, client_headers):
        order = await quoted_order(http, admin_headers, client_headers)
        response = await http.get(f"{API}/track/{order['public_token']}")
        assert response.status_code == 200
        view = response.json()["data"]
        assert view["stage"] == "QUOTATION_SENT"
        assert view["stage_label"] == "Quotation Sent"
        assert view["progress_percent"] == 27
        assert len(view["stages"]) == 15
        assert [s["stage"] for s in view["stages"] if s["current"]] == ["QUOTATION_SENT"]
        assert [a["action_type"] for a in view["actions"]] == ["QUOTATION_REVIEW"]
        assert view["quotations"][0]["file_url"] == "/uploads/q/ups.pdf"

    @pytest.mark.asyncio
    async def test_lists_every_quotation_sent(self, http, admin_headers, client_headers):
        order = await quoted_order(http, admin_headers, client_headers)
        rejected = await http.post(
            f"{API}/client/orders/{order['id']}/quotations/{order['quotations'][0]['id']}/decision",
            json={"accept": False, "rejection_reason": "Over budget"},
            headers=client_headers,
        )
        assert rejected.status_code == 200, rejected.text
        resent = await http.post(
            f"{API}/orders/{order['id']}/quotations",
            json={"total_amount": "11000", "file_url": "/uploads/q/ups-rev1.pdf"},
            headers=admin_headers,
        )
        assert resent.status_code == 201, resent.text

        view = (await http.get(f"{API}/track/{order['public_token']}")).json()["data"]
        assert [(q["file_url"], q["decision"]) for q in view["quotations"]] == [
            ("/uploads/q/ups.pdf", "REJECTED"),
            ("/uploads/q/ups-rev1.pdf", "PENDING"),
        ]

    @pytest.mark.asyncio
    async def test_acknowledged_keys_are_passed_back(self, http, admin_headers, client_headers):
        order = await quoted_order(http, admin_headers, client_headers)
        key = f"{order['id']}_QUOTATION_REVIEW_{order['quotations'][0]['id']}"
        response = await http.get(f"{API}/track/{order['public_token']}", params={"ack": [key]})
        assert response.json()["data"]["actions"] == []

    @pytest.mark.asyncio
    async def test_never_shows_admin_actions(self, http, client_headers):
        created = await http.post(f"{API}/client/orders", json={"title": "Cable drums"}, headers=client_headers)
        token = created.json()["data"]["public_token"]
        view = (await http.get(f"{API}/track/{token}")).json()["data"]
        assert view["actions"] == []
        assert "public_token" not in view

    @pytest.mark.asyncio
    async def test_unknown_token(self, http):
        response = await http.get(f"{API}/track/does-not-exist")
        assert response.status_code == 404
