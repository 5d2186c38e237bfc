"""
Tests for the Shiprocket API client.

The carrier is replaced with httpx.MockTransport; the token clock is a
FakeClock so expiry can be stepped over without waiting.
"""
import json

import httpx
import pytest

from app.core.exceptions import CarrierAPIError, CarrierAuthError
from app.core.http_client import ResilientHTTPClient, RetryConfig
from app.schemas.shiprocket import CarrierOrderItem, CarrierOrderRequest
from app.services.shiprocket_client import ShiprocketClient, ShiprocketCredentials

BASE_URL = "https://apiv2.shiprocket.in/v1/external"
PREFIX = "/v1/external"


class FakeShiprocket:
    """Records requests and answers from a path -> handler table."""

    def __init__(self):
        self.requests = []
        self.routes = {
            f"{PREFIX}/auth/login": lambda r: httpx.Response(200, json={"token": f"tok-{self.login_count}"}),
        }

    @property
    def login_count(self) -> int:
        return sum(1 for r in self.requests if r.url.path == f"{PREFIX}/auth/login")

    def calls_to(self, path: str):
        return [r for r in self.requests if r.url.path == f"{PREFIX}{path}"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, json={"message": "Not found"})
        return handler(request)


def build_client(fake: FakeShiprocket, clock, max_retries: int = 2) -> ShiprocketClient:
    http = ResilientHTTPClient(
        base_url=BASE_URL,
        retry_config=RetryConfig(max_retries=max_retries, base_delay=0, max_delay=0, jitter_factor=0),
        timeout=5.0,
        transport=httpx.MockTransport(fake),
    )
    return ShiprocketClient(
        ShiprocketCredentials(email="ops@example.com", password="pw", base_url=BASE_URL),
        http_client=http,
        clock=clock,
    )


def sample_payload() -> CarrierOrderRequest:
    return CarrierOrderRequest(
        order_id="42",
        order_date="2025-01-01",
        pickup_location="Primary",
        billing_customer_name="Asha",
        billing_last_name="Rao",
        billing_address="12 MG Road",
        billing_city="Bengaluru",
        billing_pincode="560001",
        billing_state="Karnataka",
        billing_country="India",
        billing_email="asha@example.com",
        billing_phone="9876543210",
        order_items=[CarrierOrderItem(name="Teak Side Table", sku="501", units=2, selling_price=500)],
        payment_method="COD",
        sub_total=1000,
        shipping_charges=100,
        total=1100,
        length=10,
        breadth=10,
        height=10,
        weight=0.5,
    )


class TestAuthentication:
    """Token session handling."""

    @pytest.mark.asyncio
    async def test_token_reused_for_ten_days(self, clock):
        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/courier/track/awb/AWB1"] = lambda r: httpx.Response(
            200, json={"tracking_data": {"shipment_status": 6}}
        )
        client = build_client(fake, clock)

        await client.track_by_awb("AWB1")
        clock.advance(days=9, hours=23)
        await client.track_by_awb("AWB1")
        await client.close()

        assert fake.login_count == 1
        tracking = fake.calls_to("/courier/track/awb/AWB1")
        assert [r.headers["Authorization"] for r in tracking] == ["Bearer tok-1", "Bearer tok-1"]

    @pytest.mark.asyncio
    async def test_token_refreshed_once_after_expiry(self, clock):
        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/courier/track/awb/AWB1"] = lambda r: httpx.Response(200, json={"tracking_data": {}})
        client = build_client(fake, clock)

        await client.track_by_awb("AWB1")
        clock.advance(days=10, seconds=1)
        await client.track_by_awb("AWB1")
        await client.track_by_awb("AWB1")
        await client.close()

        assert fake.login_count == 2
        last = fake.calls_to("/courier/track/awb/AWB1")[-1]
        assert last.headers["Authorization"] == "Bearer tok-2"

    @pytest.mark.asyncio
    async def test_login_sends_credentials(self, clock):
        fake = FakeShiprocket()
        client = build_client(fake, clock)

        token = await client.get_token()
        await client.close()

        assert token == "tok-1"
        body = json.loads(fake.requests[0].content)
        assert body == {"email": "ops@example.com", "password": "pw"}
        assert client.session.expires_at == clock.now + client.token_ttl

    @pytest.mark.asyncio
    async def test_rejected_credentials_raise_auth_error(self, clock):
        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/auth/login"] = lambda r: httpx.Response(
            403, json={"message": "Invalid email and password combination"}
        )
        client = build_client(fake, clock)

        with pytest.raises(CarrierAuthError) as exc_info:
            await client.track_by_awb("AWB1")
        await client.close()

        assert exc_info.value.details["carrier_status"] == 403
        assert fake.calls_to("/courier/track/awb/AWB1") == []

    @pytest.mark.asyncio
    async def test_network_failure_on_login_raises_auth_error(self, clock):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = build_client(handler, clock)

        with pytest.raises(CarrierAuthError):
            await client.authenticate()
        await client.close()

    @pytest.mark.asyncio
    async def test_unauthorized_response_clears_session(self, clock):
        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/courier/track/awb/AWB1"] = lambda r: httpx.Response(
            401, json={"message": "Token has expired"}
        )
        client = build_client(fake, clock)

        with pytest.raises(CarrierAPIError):
            await client.track_by_awb("AWB1")
        await client.close()

        assert client.session.token is None


class TestCarrierErrors:
    """Non-2xx answers surface as CarrierAPIError with the body intact."""

    @pytest.mark.asyncio
    async def test_create_order_error_body_passed_through(self, clock):
        carrier_body = {
            "message": "Wrong Pickup location entered.",
            "status_code": 422,
            "data": {"data": [{"pickup_location": "Warehouse"}]},
        }
        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/orders/create/adhoc"] = lambda r: httpx.Response(422, json=carrier_body)
        client = build_client(fake, clock)

        with pytest.raises(CarrierAPIError) as exc_info:
            await client.create_order(sample_payload())
        await client.close()

        error = exc_info.value
        assert error.status == 422
        assert error.body == carrier_body
        assert error.details["carrier_response"] == carrier_body
        assert error.message == "Wrong Pickup location entered."
        assert error.http_status == 400

    @pytest.mark.asyncio
    async def test_create_order_is_not_retried(self, clock):
        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/orders/create/adhoc"] = lambda r: httpx.Response(503, json={"message": "busy"})
        client = build_client(fake, clock, max_retries=3)

        with pytest.raises(CarrierAPIError) as exc_info:
            await client.create_order(sample_payload())
        await client.close()

        assert len(fake.calls_to("/orders/create/adhoc")) == 1
        assert exc_info.value.http_status == 500

    @pytest.mark.asyncio
    async def test_tracking_retried_on_server_error(self, clock):
        attempts = []

        def track(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503, json={"message": "busy"})
            return httpx.Response(200, json=[{"tracking_data": {"track_status": 1}}])

        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/courier/track/shipment/SH1"] = track
        client = build_client(fake, clock, max_retries=2)

        response = await client.track_shipment("SH1")
        await client.close()

        assert len(attempts) == 3
        assert response.tracking_data == {"track_status": 1}

    @pytest.mark.asyncio
    async def test_network_error_raises_carrier_api_error(self, clock):
        fake = FakeShiprocket()

        def boom(request):
            raise httpx.ConnectError("unreachable", request=request)

        fake.routes[f"{PREFIX}/courier/generate/pickup"] = boom
        client = build_client(fake, clock)

        with pytest.raises(CarrierAPIError) as exc_info:
            await client.request_pickup(["SH1"])
        await client.close()

        assert exc_info.value.status is None
        assert exc_info.value.http_status == 500


class TestOperations:
    """Request shapes for each carrier operation."""

    @pytest.mark.asyncio
    async def test_create_order_returns_ids(self, clock):
        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/orders/create/adhoc"] = lambda r: httpx.Response(
            200, json={"order_id": 9001, "shipment_id": "SH1", "status": "NEW", "status_code": 1}
        )
        client = build_client(fake, clock)

        response = await client.create_order(sample_payload())
        await client.close()

        assert response.order_id == 9001
        assert response.shipment_id == "SH1"
        sent = json.loads(fake.calls_to("/orders/create/adhoc")[0].content)
        assert sent["order_id"] == "42"
        assert sent["payment_method"] == "COD"
        assert sent["order_items"][0]["units"] == 2

    @pytest.mark.asyncio
    async def test_recommended_couriers_in_carrier_order(self, clock):
        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/courier/serviceability"] = lambda r: httpx.Response(200, json={
            "status": 200,
            "data": {"available_courier_companies": [
                {"courier_company_id": 7, "courier_name": "Delhivery"},
                {"courier_company_id": 3, "courier_name": "Blue Dart"},
            ]},
        })
        client = build_client(fake, clock)

        couriers = await client.get_recommended_couriers("SH1")
        await client.close()

        assert [c.courier_company_id for c in couriers] == [7, 3]
        request = fake.calls_to("/courier/serviceability")[0]
        assert request.url.params["shipment_id"] == "SH1"

    @pytest.mark.asyncio
    async def test_generate_awb(self, clock):
        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/courier/assign/awb"] = lambda r: httpx.Response(200, json={
            "awb_assign_status": 1,
            "response": {"data": {"awb_code": "AWB1", "courier_name": "Delhivery", "courier_company_id": 7}},
        })
        client = build_client(fake, clock)

        response = await client.generate_awb("SH1", 7)
        await client.close()

        assert response.awb.awb_code == "AWB1"
        assert response.awb.courier_name == "Delhivery"
        sent = json.loads(fake.calls_to("/courier/assign/awb")[0].content)
        assert sent == {"shipment_id": "SH1", "courier_id": 7}

    @pytest.mark.asyncio
    async def test_serviceability_cod_flag(self, clock):
        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/courier/serviceability"] = lambda r: httpx.Response(
            200, json={"status": 200, "data": {"available_courier_companies": []}}
        )
        client = build_client(fake, clock)

        await client.check_serviceability("560001", "110001", 1.2, cod_amount=450)
        await client.check_serviceability("560001", "110001", 1.2)
        await client.close()

        first, second = fake.calls_to("/courier/serviceability")
        assert first.url.params["cod"] == "1"
        assert first.url.params["pickup_postcode"] == "560001"
        assert first.url.params["delivery_postcode"] == "110001"
        assert first.url.params["weight"] == "1.2"
        assert second.url.params["cod"] == "0"

    @pytest.mark.asyncio
    async def test_pickup_label_manifest_send_shipment_id_list(self, clock):
        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/courier/generate/pickup"] = lambda r: httpx.Response(
            200, json={"pickup_status": 1, "response": {"pickup_scheduled_date": "2025-01-02 10:00:00"}}
        )
        fake.routes[f"{PREFIX}/courier/generate/label"] = lambda r: httpx.Response(
            200, json={"label_created": 1, "label_url": "https://cdn.example.com/label.pdf"}
        )
        fake.routes[f"{PREFIX}/manifests/generate"] = lambda r: httpx.Response(
            200, json={"status": 1, "manifest_url": "https://cdn.example.com/manifest.pdf"}
        )
        client = build_client(fake, clock)

        pickup = await client.request_pickup(["SH1"])
        label = await client.generate_label(["SH1"])
        manifest = await client.generate_manifest(["SH1"])
        await client.close()

        assert pickup.response.pickup_scheduled_date == "2025-01-02 10:00:00"
        assert label.label_url == "https://cdn.example.com/label.pdf"
        assert manifest.manifest_url == "https://cdn.example.com/manifest.pdf"
        for path in ("/courier/generate/pickup", "/courier/generate/label", "/manifests/generate"):
            assert json.loads(fake.calls_to(path)[0].content) == {"shipment_id": ["SH1"]}

    @pytest.mark.asyncio
    async def test_cancel_shipment_by_awb(self, clock):
        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/orders/cancel/shipment/awbs"] = lambda r: httpx.Response(
            200, json={"message": "Bulk Shipment cancellation is in progress."}
        )
        client = build_client(fake, clock)

        response = await client.cancel_shipment(["AWB1"])
        await client.close()

        assert "cancellation" in response.message
        assert json.loads(fake.calls_to("/orders/cancel/shipment/awbs")[0].content) == {"awbs": ["AWB1"]}

    @pytest.mark.asyncio
    async def test_unknown_response_fields_kept(self, clock):
        fake = FakeShiprocket()
        fake.routes[f"{PREFIX}/courier/generate/label"] = lambda r: httpx.Response(
            200, json={"label_created": 1, "label_url": "u", "not_created": []}
        )
        client = build_client(fake, clock)

        label = await client.generate_label(["SH1"])
        await client.close()

        assert label.model_dump()["not_created"] == []
