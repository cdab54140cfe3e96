#vps_autoscaler\provider\client.py

"""HTTP client for the VPS provider API."""

import logging
from typing import Any, Dict, List, Optional

import requests

from vps_autoscaler.core.errors import (
    OfferingUnavailableError,
    ProviderAPIError,
    QuotaExceededError,
    TransientProviderError,
)
from vps_autoscaler.core.models import LABEL_MANAGED
from vps_autoscaler.provider.breaker import CircuitBreaker
from vps_autoscaler.provider.interface import (
    CloudProvider,
    InstanceInfo,
    InstanceSpec,
    InstanceStatus,
    Offering,
)
from vps_autoscaler.provider.retry import is_transient

logger = logging.getLogger(__name__)


_STATUS_MAP = {
    "creating": InstanceStatus.PROVISIONING,
    "provisioning": InstanceStatus.PROVISIONING,
    "pending": InstanceStatus.PROVISIONING,
    "running": InstanceStatus.RUNNING,
    "active": InstanceStatus.RUNNING,
    "stopped": InstanceStatus.STOPPED,
    "suspended": InstanceStatus.STOPPED,
    "error": InstanceStatus.ERROR,
    "failed": InstanceStatus.ERROR,
    "deleting": InstanceStatus.DELETING,
    "deleted": InstanceStatus.GONE,
}

# Error codes in the API's JSON error body that map to dedicated exceptions.
_QUOTA_CODES = {"QUOTA_EXCEEDED", "INSUFFICIENT_QUOTA"}
_OFFERING_CODES = {"OFFERING_UNAVAILABLE", "OUT_OF_STOCK"}


class VPSProviderClient(CloudProvider):
    """
    CloudProvider backed by the provider's REST API.

    Instances created by the controller carry the managed tag so quota
    accounting only counts what the controller owns.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 30.0,
        user_agent: str = "vps-autoscaler",
        instance_quota: Optional[int] = None,
        session: Optional[requests.Session] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.instance_quota = instance_quota
        self._session = session or requests.Session()
        self.breaker = breaker or CircuitBreaker()
        self._session.headers.update({
            "Authorization": f"Bearer {token}",
            "User-Agent": user_agent,
            "Accept": "application/json",
        })

    # -------------------------
    # HTTP
    # -------------------------

    def _request(self, method: str, path: str, **kwargs) -> Optional[Dict[str, Any]]:
        if not self.breaker.allow():
            raise TransientProviderError(f"{method} {path} skipped: provider circuit open")

        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            self.breaker.record_failure()
            raise TransientProviderError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            error = self._error_from(response)
            # Only outages count against the circuit; a 4xx is the API answering.
            if is_transient(error):
                self.breaker.record_failure()
            else:
                self.breaker.record_success()
            raise error

        self.breaker.record_success()

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _error_from(response: requests.Response) -> Exception:
        message, details, code = response.reason or "error", "", None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = body.get("message", message)
            details = body.get("details", "") or ""
            code = body.get("code")

        request_id = response.headers.get("X-Request-ID")

        if code in _QUOTA_CODES:
            return QuotaExceededError(f"{message} {details}".strip())
        if code in _OFFERING_CODES:
            return OfferingUnavailableError(f"{message} {details}".strip())
        return ProviderAPIError(response.status_code, message, details, request_id)

    @staticmethod
    def _to_info(data: Dict[str, Any]) -> InstanceInfo:
        raw_status = str(data.get("status", "")).lower()
        return InstanceInfo(
            instance_id=str(data.get("id") or data.get("identifier")),
            name=data.get("name", ""),
            status=_STATUS_MAP.get(raw_status, InstanceStatus.PROVISIONING),
            ip_address=data.get("ip") or data.get("ip_address"),
        )

    # -------------------------
    # INSTANCES
    # -------------------------

    def create_instance(self, spec: InstanceSpec) -> InstanceInfo:
        payload = {
            "name": spec.name,
            "hostname": spec.name,
            "offering_id": spec.offering_id,
            "datacenter_id": spec.datacenter_id,
            "os_image_id": spec.os_image_id,
            "ssh_key_ids": spec.ssh_key_ids,
            "tags": sorted(set(spec.tags) | {LABEL_MANAGED}),
            "user_data": spec.user_data,
            "notes": spec.notes,
        }
        data = self._request(
            "POST",
            "/vm",
            json=payload,
            headers={"Idempotency-Key": spec.idempotency_key},
        )
        info = self._to_info(data or {})
        logger.info(f"[provider] create {spec.name} offering={spec.offering_id} -> {info.instance_id}")
        return info

    def delete_instance(self, instance_id: str) -> None:
        try:
            self._request("DELETE", f"/vm/{instance_id}")
        except ProviderAPIError as e:
            if e.is_not_found():
                logger.info(f"[provider] delete {instance_id} -> already gone")
                return
            raise
        logger.info(f"[provider] delete {instance_id} -> accepted")

    def get_instance(self, instance_id: str) -> InstanceInfo:
        try:
            data = self._request("GET", f"/vm/{instance_id}")
        except ProviderAPIError as e:
            if e.is_not_found():
                return InstanceInfo(instance_id=instance_id, name="", status=InstanceStatus.GONE)
            raise
        return self._to_info(data or {})

    def list_instances(self) -> List[InstanceInfo]:
        data = self._request("GET", "/vm") or {}
        return [self._to_info(item) for item in data.get("data", [])]

    def find_instance(self, name: str) -> Optional[InstanceInfo]:
        for info in self.list_instances():
            if info.name == name:
                return info
        return None

    # -------------------------
    # CATALOG / QUOTA
    # -------------------------

    def list_offerings(self, datacenter_id: str) -> List[Offering]:
        data = self._request("GET", "/offerings", params={"datacenter_id": datacenter_id}) or {}
        offerings = []
        for item in data.get("data", []):
            offerings.append(
                Offering(
                    offering_id=str(item.get("id")),
                    cpu=int(item.get("cpu", 0)),
                    memory_mb=int(item.get("ram", 0)),
                    disk_gb=int(item.get("disk", 0)),
                    bandwidth_gb=int(item.get("traffic", 0)),
                    monthly_price=float(item.get("price_monthly", 0.0)),
                    available=bool(item.get("available", True)),
                )
            )
        return offerings

    def available_quota(self) -> Optional[int]:
        if self.instance_quota is None:
            return None
        data = self._request("GET", "/vm", params={"tag": LABEL_MANAGED}) or {}
        used = len(data.get("data", []))
        return max(self.instance_quota - used, 0)
