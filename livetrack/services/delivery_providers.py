"""
Passerelle transporteurs tiers / Third-party courier gateway.

DoorDash Drive et Uber Direct en marque blanche : devis, creation, suivi,
annulation et webhooks, normalises vers `ProviderDelivery`.
White-label DoorDash Drive and Uber Direct: quotes, creation, status,
cancellation and webhooks, normalized to `ProviderDelivery`.

`community` (coursiers de la communaute) est toujours disponible et gere
localement par la repartition / `community` is always available and is
dispatched locally.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timedelta, timezone

import httpx
from jose import jwt

from livetrack.config import settings
from livetrack.exceptions import InvalidWebhook, ProviderError
from livetrack.models.order import DeliveryProvider
from livetrack.schemas.delivery import CourierStatus, DeliveryQuote, DeliveryRequest, ProviderDelivery

logger = logging.getLogger(__name__)

EXTERNAL_ID_PREFIX = "mohn"

DOORDASH_STATUS_MAP: dict[str, CourierStatus] = {
    "quote": CourierStatus.CREATED,
    "created": CourierStatus.CREATED,
    "confirmed": CourierStatus.ASSIGNED,
    "enroute_to_pickup": CourierStatus.PICKING_UP,
    "arrived_at_pickup": CourierStatus.PICKING_UP,
    "picked_up": CourierStatus.PICKED_UP,
    "enroute_to_dropoff": CourierStatus.DELIVERING,
    "arrived_at_dropoff": CourierStatus.DELIVERING,
    "delivered": CourierStatus.DELIVERED,
    "cancelled": CourierStatus.CANCELLED,
    "returned": CourierStatus.RETURNED,
}

UBER_STATUS_MAP: dict[str, CourierStatus] = {
    "pending": CourierStatus.CREATED,
    "pickup": CourierStatus.PICKING_UP,
    "pickup_complete": CourierStatus.PICKED_UP,
    "dropoff": CourierStatus.DELIVERING,
    "delivered": CourierStatus.DELIVERED,
    "canceled": CourierStatus.CANCELLED,
    "returned": CourierStatus.RETURNED,
}

# Marge avant expiration du token Uber / Uber token refresh margin
UBER_TOKEN_MARGIN_SECONDS = 3600
DOORDASH_DEFAULT_ETA_MINUTES = 35
UBER_DEFAULT_ETA_MINUTES = 30


def map_doordash_status(value: str | None) -> CourierStatus:
    return DOORDASH_STATUS_MAP.get(value or "", CourierStatus.CREATED)


def map_uber_status(value: str | None) -> CourierStatus:
    return UBER_STATUS_MAP.get(value or "", CourierStatus.CREATED)


def _iso_in(minutes: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(minutes=minutes)).isoformat(timespec="seconds")


def _uber_address(address: str) -> str:
    # Adresse complete, geocodee par Uber / Full address, geocoded by Uber
    return json.dumps({"street_address": [address], "country": "US"})


def doordash_configured() -> bool:
    return bool(settings.DOORDASH_DEVELOPER_ID and settings.DOORDASH_KEY_ID and settings.DOORDASH_SIGNING_SECRET)


def uber_configured() -> bool:
    return bool(settings.UBER_CLIENT_ID and settings.UBER_CLIENT_SECRET and settings.UBER_CUSTOMER_ID)


def doordash_token(now: int | None = None) -> str:
    """JWT auto-signe pour DoorDash Drive / Self-signed JWT for DoorDash Drive (valid 5 minutes)."""
    if not doordash_configured():
        raise ProviderError("DoorDash credentials are not configured")
    issued = int(time.time()) if now is None else now
    secret = base64.b64decode(settings.DOORDASH_SIGNING_SECRET)
    claims = {"aud": "doordash", "iss": settings.DOORDASH_DEVELOPER_ID, "iat": issued, "exp": issued + 300}
    return jwt.encode(
        claims,
        secret,
        algorithm="HS256",
        headers={"dd-ver": "DD-JWT-V1", "kid": settings.DOORDASH_KEY_ID},
    )


def verify_uber_signature(raw_body: bytes, signature: str, key: str | None = None) -> bool:
    """HMAC-SHA256 du corps brut, en hexa / HMAC-SHA256 of the raw body, hex encoded."""
    key = settings.UBER_WEBHOOK_SIGNING_KEY if key is None else key
    expected = hmac.new(key.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


class DeliveryGateway:
    """Client des transporteurs tiers / Third-party courier client.

    Un seul `httpx.AsyncClient` partage ; le token Uber est mis en cache.
    One shared `httpx.AsyncClient`; the Uber token is cached.
    """

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        self._owns_client = client is None
        self._uber_token: str | None = None
        self._uber_token_expiry = 0.0
        self._token_lock = asyncio.Lock()

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    def available_providers(self) -> list[DeliveryProvider]:
        """Transporteurs configures / Configured providers (community always first)."""
        available = [DeliveryProvider.COMMUNITY]
        if doordash_configured():
            available.append(DeliveryProvider.DOORDASH)
        if uber_configured():
            available.append(DeliveryProvider.UBER)
        return available

    # ─── API publique / Public API ───

    async def quote(
        self, request: DeliveryRequest, providers: list[DeliveryProvider] | None = None,
    ) -> list[DeliveryQuote]:
        """Devis des transporteurs, le moins cher d'abord / Courier quotes, cheapest first.

        Un transporteur en erreur est ignore / A failing provider is skipped.
        """
        wanted = providers or [DeliveryProvider.DOORDASH, DeliveryProvider.UBER]
        calls = []
        if DeliveryProvider.DOORDASH in wanted and doordash_configured():
            calls.append(self._doordash_quote(request))
        if DeliveryProvider.UBER in wanted and uber_configured():
            calls.append(self._uber_quote(request))

        quotes = []
        for result in await asyncio.gather(*calls, return_exceptions=True):
            if isinstance(result, ProviderError):
                logger.warning("Delivery quote failed: %s", result.detail)
            elif isinstance(result, BaseException):
                raise result
            else:
                quotes.append(result)
        return sorted(quotes, key=lambda q: q.fee_cents)

    async def create(
        self, provider: DeliveryProvider, request: DeliveryRequest, quote_id: str | None = None,
    ) -> ProviderDelivery:
        if provider is DeliveryProvider.DOORDASH:
            return await self._doordash_create(request)
        if provider is DeliveryProvider.UBER:
            return await self._uber_create(request, quote_id)
        raise ProviderError(f"Unsupported provider: {provider.value}")

    async def status(self, provider: DeliveryProvider, provider_delivery_id: str) -> ProviderDelivery:
        if provider is DeliveryProvider.DOORDASH:
            data = await self._doordash_request("GET", f"/drive/v2/deliveries/{provider_delivery_id}")
            return self._doordash_delivery(provider_delivery_id, data)
        if provider is DeliveryProvider.UBER:
            data = await self._uber_request("GET", f"/deliveries/{provider_delivery_id}")
            return self._uber_delivery(data, provider_delivery_id)
        raise ProviderError(f"Unsupported provider: {provider.value}")

    async def cancel(self, provider: DeliveryProvider, provider_delivery_id: str):
        if provider is DeliveryProvider.DOORDASH:
            await self._doordash_request("PUT", f"/drive/v2/deliveries/{provider_delivery_id}/cancel")
        elif provider is DeliveryProvider.UBER:
            await self._uber_request("POST", f"/deliveries/{provider_delivery_id}/cancel")
        else:
            raise ProviderError(f"Unsupported provider: {provider.value}")
        logger.info("Cancelled %s delivery %s", provider.value, provider_delivery_id)

    # ─── Webhooks ───

    def parse_webhook(self, headers: dict[str, str], raw_body: bytes) -> ProviderDelivery:
        """Verifier et normaliser un webhook / Verify and normalize a webhook.

        Uber : signature HMAC dans `x-uber-signature`. DoorDash : reconnu
        par `event_name` ou `external_delivery_id`.
        """
        try:
            body = json.loads(raw_body or b"{}")
        except ValueError as exc:
            raise InvalidWebhook("Webhook body is not JSON") from exc
        if not isinstance(body, dict):
            raise InvalidWebhook("Webhook body must be an object")

        signature = headers.get("x-uber-signature")
        if signature:
            if settings.UBER_WEBHOOK_SIGNING_KEY and not verify_uber_signature(raw_body, signature):
                logger.warning("Invalid Uber webhook signature")
                raise InvalidWebhook("Invalid signature")
            return self.parse_uber_webhook(body)
        if body.get("event_name") or body.get("external_delivery_id"):
            return self.parse_doordash_webhook(body)
        raise InvalidWebhook("Unknown webhook source")

    @staticmethod
    def parse_doordash_webhook(body: dict) -> ProviderDelivery:
        status = body.get("delivery_status")
        if not status and body.get("event_name"):
            status = body["event_name"].lower().replace("dasher_", "").replace("delivery_", "")
        location = body.get("dasher_location") or {}
        if not body.get("external_delivery_id"):
            raise InvalidWebhook("Missing external_delivery_id")
        return ProviderDelivery(
            provider=DeliveryProvider.DOORDASH,
            provider_delivery_id=body["external_delivery_id"],
            status=map_doordash_status(status),
            driver_name=body.get("dasher_name"),
            driver_phone=body.get("dasher_phone_number"),
            driver_lat=location.get("lat"),
            driver_lng=location.get("lng"),
            tracking_url=body.get("tracking_url"),
            fee_cents=body.get("fee"),
        )

    @staticmethod
    def parse_uber_webhook(body: dict) -> ProviderDelivery:
        data = body.get("data") or body
        delivery_id = data.get("id") or body.get("delivery_id")
        if not delivery_id:
            raise InvalidWebhook("Missing delivery id")
        courier = data.get("courier") or {}
        location = courier.get("location") or {}
        return ProviderDelivery(
            provider=DeliveryProvider.UBER,
            provider_delivery_id=delivery_id,
            status=map_uber_status(data.get("status") or "pending"),
            driver_name=courier.get("name"),
            driver_phone=courier.get("phone_number"),
            driver_lat=location.get("lat"),
            driver_lng=location.get("lng"),
            tracking_url=data.get("tracking_url"),
            fee_cents=data.get("fee"),
        )

    # ─── DoorDash ───

    async def _doordash_request(self, method: str, path: str, payload: dict | None = None) -> dict:
        token = doordash_token()
        return await self._send(
            "DoorDash", method, f"{settings.DOORDASH_BASE_URL}{path}",
            headers={"Authorization": f"Bearer {token}"}, json_body=payload,
        )

    async def _doordash_quote(self, request: DeliveryRequest) -> DeliveryQuote:
        external_id = f"{EXTERNAL_ID_PREFIX}-{request.order_id}-{int(time.time() * 1000)}"
        data = await self._doordash_request("POST", "/drive/v2/quotes", {
            "external_delivery_id": external_id,
            "pickup_address": request.pickup_address,
            "pickup_phone_number": request.pickup_phone,
            "pickup_business_name": request.pickup_business_name,
            "dropoff_address": request.dropoff_address,
            "dropoff_phone_number": request.dropoff_phone,
            "dropoff_contact_given_name": request.dropoff_name,
            "order_value": request.order_value,
        })
        eta_minutes = DOORDASH_DEFAULT_ETA_MINUTES
        if data.get("dropoff_time_estimated"):
            dropoff = datetime.fromisoformat(data["dropoff_time_estimated"].replace("Z", "+00:00"))
            eta_minutes = round((dropoff - datetime.now(timezone.utc)).total_seconds() / 60)
        return DeliveryQuote(
            provider=DeliveryProvider.DOORDASH,
            fee_cents=data.get("fee") or 0,
            eta_minutes=eta_minutes,
            quote_id=external_id,
            expires_at=_iso_in(5),
        )

    async def _doordash_create(self, request: DeliveryRequest) -> ProviderDelivery:
        external_id = f"{EXTERNAL_ID_PREFIX}-{request.order_id}-{int(time.time() * 1000)}"
        data = await self._doordash_request("POST", "/drive/v2/deliveries", {
            "external_delivery_id": external_id,
            "pickup_address": request.pickup_address,
            "pickup_phone_number": request.pickup_phone,
            "pickup_business_name": request.pickup_business_name,
            "pickup_instructions": request.pickup_instructions or "",
            "dropoff_address": request.dropoff_address,
            "dropoff_phone_number": request.dropoff_phone,
            "dropoff_contact_given_name": request.dropoff_name,
            "dropoff_instructions": request.dropoff_instructions or "",
            "order_value": request.order_value,
            "tip": request.tip,
            "items": [{"name": item.name, "quantity": item.quantity} for item in request.items],
        })
        logger.info("Created DoorDash delivery %s for order %s", external_id, request.order_id)
        return self._doordash_delivery(external_id, data)

    @staticmethod
    def _doordash_delivery(external_id: str, data: dict) -> ProviderDelivery:
        location = data.get("dasher_location") or {}
        return ProviderDelivery(
            provider=DeliveryProvider.DOORDASH,
            provider_delivery_id=external_id,
            status=map_doordash_status(data.get("delivery_status")),
            driver_name=data.get("dasher_name"),
            driver_phone=data.get("dasher_phone_number"),
            driver_lat=location.get("lat"),
            driver_lng=location.get("lng"),
            tracking_url=data.get("tracking_url"),
            estimated_delivery_time=data.get("dropoff_time_estimated"),
            fee_cents=data.get("fee"),
        )

    # ─── Uber ───

    async def _uber_access_token(self) -> str:
        async with self._token_lock:
            if self._uber_token and time.monotonic() < self._uber_token_expiry - UBER_TOKEN_MARGIN_SECONDS:
                return self._uber_token
            if not uber_configured():
                raise ProviderError("Uber credentials are not configured")
            try:
                response = await self._client.post(settings.UBER_AUTH_URL, data={
                    "client_id": settings.UBER_CLIENT_ID,
                    "client_secret": settings.UBER_CLIENT_SECRET,
                    "grant_type": "client_credentials",
                    "scope": "eats.deliveries",
                })
            except httpx.HTTPError as exc:
                raise ProviderError(f"Uber auth unreachable: {exc}") from exc
            data = self._json(response)
            if response.is_error:
                raise ProviderError(
                    f"Uber auth error {response.status_code}: {data.get('error_description') or data.get('error')}"
                )
            self._uber_token = data["access_token"]
            self._uber_token_expiry = time.monotonic() + float(data.get("expires_in", 0))
            return self._uber_token

    async def _uber_request(self, method: str, path: str, payload: dict | None = None) -> dict:
        token = await self._uber_access_token()
        url = f"{settings.UBER_BASE_URL}/customers/{settings.UBER_CUSTOMER_ID}{path}"
        return await self._send("Uber", method, url, headers={"Authorization": f"Bearer {token}"}, json_body=payload)

    async def _uber_quote(self, request: DeliveryRequest) -> DeliveryQuote:
        data = await self._uber_request("POST", "/delivery_quotes", {
            "pickup_address": _uber_address(request.pickup_address),
            "dropoff_address": _uber_address(request.dropoff_address),
        })
        return DeliveryQuote(
            provider=DeliveryProvider.UBER,
            fee_cents=data.get("fee") or 0,
            eta_minutes=data.get("duration") or UBER_DEFAULT_ETA_MINUTES,
            quote_id=data["id"],
            expires_at=data.get("expires_at") or _iso_in(15),
        )

    async def _uber_create(self, request: DeliveryRequest, quote_id: str | None) -> ProviderDelivery:
        payload = {
            "pickup_name": request.pickup_business_name,
            "pickup_address": _uber_address(request.pickup_address),
            "pickup_phone_number": request.pickup_phone,
            "pickup_notes": request.pickup_instructions or "",
            "dropoff_name": request.dropoff_name,
            "dropoff_address": _uber_address(request.dropoff_address),
            "dropoff_phone_number": request.dropoff_phone,
            "dropoff_notes": request.dropoff_instructions or "",
            "manifest_items": [{"name": item.name, "quantity": item.quantity} for item in request.items],
            "manifest_total_value": request.order_value,
            "tip": request.tip,
            "external_id": f"{EXTERNAL_ID_PREFIX}-{request.order_id}",
        }
        if quote_id:
            payload["quote_id"] = quote_id
        data = await self._uber_request("POST", "/deliveries", payload)
        logger.info("Created Uber delivery %s for order %s", data.get("id"), request.order_id)
        return self._uber_delivery(data)

    @staticmethod
    def _uber_delivery(data: dict, delivery_id: str | None = None) -> ProviderDelivery:
        courier = data.get("courier") or {}
        location = courier.get("location") or {}
        return ProviderDelivery(
            provider=DeliveryProvider.UBER,
            provider_delivery_id=delivery_id or data["id"],
            status=map_uber_status(data.get("status")),
            driver_name=courier.get("name"),
            driver_phone=courier.get("phone_number"),
            driver_lat=location.get("lat"),
            driver_lng=location.get("lng"),
            tracking_url=data.get("tracking_url"),
            estimated_delivery_time=data.get("dropoff_eta"),
            fee_cents=data.get("fee"),
        )

    # ─── HTTP ───

    async def _send(self, name: str, method: str, url: str, headers: dict, json_body: dict | None) -> dict:
        try:
            response = await self._client.request(method, url, headers=headers, json=json_body)
        except httpx.HTTPError as exc:
            logger.error("%s unreachable: %s", name, exc)
            raise ProviderError(f"{name} unreachable: {exc}") from exc
        data = self._json(response)
        if response.is_error:
            message = data.get("message") or data.get("code") or f"{name} error {response.status_code}"
            logger.error("%s API error %s: %s", name, response.status_code, data)
            raise ProviderError(message)
        return data

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
