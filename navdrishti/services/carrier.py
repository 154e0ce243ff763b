"""
Carrier integration (Delhivery REST API, no SDK dependency).

The shipping service only talks to the ``ShippingProvider`` protocol so tests
and alternative carriers can be swapped in through FastAPI dependency overrides.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx

from navdrishti.config import Settings, get_settings
from navdrishti.errors import ShippingProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShipmentRequest:
    order_number: str
    service_type: str
    pickup_address: Dict[str, Any]
    delivery_address: Dict[str, Any]
    package: Dict[str, Any]
    total_amount: str


@dataclass(frozen=True)
class ShipmentRef:
    waybill: str
    carrier: str
    carrier_order_id: Optional[str]
    status: str
    expected_delivery: Optional[datetime]


@dataclass(frozen=True)
class CarrierScan:
    occurred_at: datetime
    status: str
    location: str
    activity: Optional[str] = None


class ShippingProvider(Protocol):
    name: str

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentRef:
        ...

    async def track(self, waybill: str) -> List[CarrierScan]:
        ...


def parse_timestamp(raw: Any) -> datetime:
    """Carrier timestamps come as ISO strings, with or without offset."""
    if isinstance(raw, datetime):
        value = raw
    else:
        try:
            value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError as exc:
            raise ShippingProviderError(f"Unparseable carrier timestamp {raw!r}") from exc
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class DelhiveryClient:
    name = "Delhivery"

    def __init__(
        self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self._settings = settings
        self._timeout = httpx.Timeout(settings.carrier_timeout_seconds)
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        if not self._settings.carrier_token:
            raise ShippingProviderError("Carrier API not configured")
        return {"Authorization": f"Token {self._settings.carrier_token}"}

    def _base(self) -> str:
        return self._settings.carrier_base_url.rstrip("/")

    def _manifest(self, req: ShipmentRequest) -> Dict[str, Any]:
        pickup, drop, pkg = req.pickup_address, req.delivery_address, req.package
        return {
            "shipments": [{
                "client": self._settings.carrier_client_name,
                "name": drop.get("name"),
                "add": drop.get("address"),
                "pin": drop.get("pincode"),
                "city": drop.get("city"),
                "state": drop.get("state"),
                "country": "India",
                "phone": drop.get("phone"),
                "order": req.order_number,
                "payment_mode": "Prepaid",
                "return_pin": pickup.get("pincode"),
                "return_city": pickup.get("city"),
                "return_phone": pickup.get("phone"),
                "return_add": pickup.get("address"),
                "return_state": pickup.get("state"),
                "return_country": "India",
                "products_desc": "Marketplace Item",
                "cod_amount": "0",
                "order_date": date.today().isoformat(),
                "total_amount": req.total_amount,
                "seller_add": pickup.get("address"),
                "seller_name": pickup.get("name"),
                "quantity": "1",
                "shipment_width": pkg.get("breadth"),
                "shipment_height": pkg.get("height"),
                "shipment_length": pkg.get("length"),
                "weight": pkg.get("weight"),
                "shipping_mode": "Express" if req.service_type == "express" else "Surface",
                "address_type": "home",
            }],
            "pickup_location": {
                "name": pickup.get("name"),
                "add": pickup.get("address"),
                "city": pickup.get("city"),
                "pin_code": pickup.get("pincode"),
                "country": "India",
                "phone": pickup.get("phone"),
            },
        }

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentRef:
        url = f"{self._base()}/cmu/create.json"
        form = {"format": "json", "data": json.dumps(self._manifest(request))}
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(url, data=form, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.error("Carrier create failed order=%s: %s", request.order_number, exc)
            raise ShippingProviderError("Carrier unavailable") from exc

        if not resp.is_success:
            logger.error(
                "Carrier API error order=%s status=%d body=%s",
                request.order_number, resp.status_code, resp.text[:300],
            )
            raise ShippingProviderError("Carrier rejected the shipment")

        try:
            body = resp.json()
        except ValueError as exc:
            raise ShippingProviderError("Carrier returned a non-JSON response") from exc
        packages = body.get("packages") or []
        if not body.get("success", True) or not packages or not packages[0].get("waybill"):
            logger.error("Carrier returned no waybill order=%s body=%r", request.order_number, body)
            raise ShippingProviderError("Carrier returned no waybill")

        pkg = packages[0]
        expected = pkg.get("expected_delivery_date")
        return ShipmentRef(
            waybill=str(pkg["waybill"]),
            carrier=self.name,
            carrier_order_id=pkg.get("refnum") or body.get("upload_wbn"),
            status=pkg.get("status") or "Manifest Generated",
            expected_delivery=parse_timestamp(expected) if expected else None,
        )

    async def track(self, waybill: str) -> List[CarrierScan]:
        url = f"{self._base()}/v1/packages/json/"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.get(url, params={"waybill": waybill}, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.error("Carrier tracking failed waybill=%s: %s", waybill, exc)
            raise ShippingProviderError("Carrier unavailable") from exc

        if not resp.is_success:
            logger.error(
                "Carrier tracking error waybill=%s status=%d body=%s",
                waybill, resp.status_code, resp.text[:300],
            )
            raise ShippingProviderError("Carrier tracking lookup failed")

        try:
            body = resp.json()
        except ValueError as exc:
            raise ShippingProviderError("Carrier returned a non-JSON response") from exc

        scans: List[CarrierScan] = []
        for shipment_data in body.get("ShipmentData") or []:
            shipment = shipment_data.get("Shipment") or {}
            for entry in shipment.get("Scans") or []:
                detail = entry.get("ScanDetail") or {}
                if not detail.get("ScanDateTime") or not detail.get("Scan"):
                    continue
                scans.append(
                    CarrierScan(
                        occurred_at=parse_timestamp(detail["ScanDateTime"]),
                        status=str(detail["Scan"]),
                        location=str(detail.get("ScannedLocation") or ""),
                        activity=detail.get("Instructions"),
                    )
                )
        scans.sort(key=lambda s: s.occurred_at)
        return scans


def get_shipping_provider() -> ShippingProvider:
    """FastAPI dependency."""
    return DelhiveryClient(get_settings())
