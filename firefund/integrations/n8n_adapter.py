"""
n8n integration adapter for FireFund
Sends receipt requests to the n8n workflow (PDF rendering + email)
and verifies the callbacks it posts back
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List

import httpx

from firefund.core.security import security_service


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Firefund-Signature"
TIMESTAMP_HEADER = "X-Firefund-Timestamp"
CALLBACK_PATH = "/api/v1/webhooks/n8n-callback"


@dataclass
class N8nConfig:
    """n8n integration configuration"""
    webhook_url: str = ""
    api_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    default_timeout: int = 30
    verify_ssl: bool = True
    callback_base_url: str = "http://localhost:8080"

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'N8nConfig':
        n8n = config.get('n8n', {})
        return cls(
            webhook_url=n8n.get('webhook_url', '') or '',
            api_key=n8n.get('api_key') or None,
            webhook_secret=n8n.get('webhook_secret') or None,
            default_timeout=int(n8n.get('timeout', 30)),
            verify_ssl=bool(n8n.get('verify_ssl', True)),
            callback_base_url=n8n.get('callback_base_url', 'http://localhost:8080')
        )


@dataclass
class WorkflowResponse:
    """Outcome of a request to the n8n workflow"""
    success: bool
    workflow_id: Optional[str] = None
    pdf_url: Optional[str] = None
    error: Optional[str] = None
    estimated_processing_time: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    response_data: Optional[Dict[str, Any]] = None


class N8nAdapter:
    """n8n integration adapter"""

    def __init__(self, config: N8nConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(verify=self.config.verify_ssl)
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def callback_url(self) -> str:
        return f"{self.config.callback_base_url.rstrip('/')}{CALLBACK_PATH}"

    def validate_configuration(self) -> Dict[str, Any]:
        """Report missing or invalid settings"""
        errors: List[str] = []
        if not self.config.webhook_url:
            errors.append("n8n webhook_url is not configured")
        elif not self.config.webhook_url.startswith(("http://", "https://")):
            errors.append("n8n webhook_url must be an http(s) URL")
        if not self.config.api_key:
            errors.append("n8n api_key is not configured")
        return {"valid": not errors, "errors": errors}

    def build_receipt_payload(self, receipt_data: Dict[str, Any], send_email: bool = True,
                              quality: str = "standard") -> Dict[str, Any]:
        """Build the generate_and_send_receipt payload"""
        return {
            "action": "generate_and_send_receipt",
            "receipt_data": {**receipt_data, "quality": quality},
            "options": {
                "send_email": send_email,
                "generate_pdf": True,
                "store_result": True,
                "quality": quality,
                "format": "A4",
                "margins": {
                    "top": "20mm",
                    "bottom": "20mm",
                    "left": "20mm",
                    "right": "20mm"
                }
            },
            "callback_url": self.callback_url,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": "firefund",
            "version": "v3"
        }

    def _build_headers(self, payload: Dict[str, Any]) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "FireFund/1.0",
        }

        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        if self.config.webhook_secret:
            timestamp = int(time.time())
            payload_str = json.dumps(payload, sort_keys=True)
            headers[SIGNATURE_HEADER] = security_service.generate_signature(
                payload_str, timestamp, self.config.webhook_secret
            )
            headers[TIMESTAMP_HEADER] = str(timestamp)

        return headers

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        return await self._get_client().post(
            self.config.webhook_url,
            json=payload,
            headers=self._build_headers(payload),
            timeout=self.config.default_timeout
        )

    async def send_receipt_request(self, receipt_data: Dict[str, Any], send_email: bool = True,
                                   quality: str = "standard") -> WorkflowResponse:
        """Send a receipt generation request; failures are returned, not raised"""
        payload = self.build_receipt_payload(receipt_data, send_email=send_email, quality=quality)

        if not self.config.webhook_url:
            logger.error("n8n webhook URL not configured")
            return WorkflowResponse(success=False, error="n8n configuration missing", payload=payload)

        logger.info(
            f"Sending receipt {receipt_data.get('receipt_number')} to n8n "
            f"(amount={receipt_data.get('amount')})"
        )

        try:
            response = await self._post(payload)
        except httpx.HTTPError as e:
            logger.error(f"n8n webhook error: {e}")
            return WorkflowResponse(success=False, error=f"n8n unreachable: {e}", payload=payload)

        if response.status_code >= 400:
            logger.error(f"n8n webhook failed: {response.status_code} - {response.text}")
            return WorkflowResponse(
                success=False,
                error=f"n8n webhook error: {response.status_code} - {response.text}",
                payload=payload
            )

        try:
            data = response.json()
        except ValueError:
            data = {}

        return WorkflowResponse(
            success=True,
            workflow_id=data.get("workflowId") or data.get("executionId"),
            pdf_url=data.get("pdfUrl"),
            estimated_processing_time=data.get("estimatedProcessingTime"),
            payload=payload,
            response_data=data
        )

    async def test_connection(self) -> Dict[str, Any]:
        """Send a health_check action to the workflow"""
        if not self.config.webhook_url:
            return {"success": False, "error": "n8n webhook_url is not configured"}

        payload = {
            "action": "health_check",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": "firefund",
            "version": "v3"
        }

        try:
            response = await self._post(payload)
        except httpx.HTTPError as e:
            return {"success": False, "error": str(e)}

        if response.status_code >= 400:
            return {"success": False, "error": f"HTTP {response.status_code}"}
        return {"success": True, "status_code": response.status_code}

    def verify_callback_signature(self, payload: Dict[str, Any],
                                  signature: Optional[str],
                                  timestamp: Optional[str]) -> bool:
        """Verify callback signature; always true when no secret is configured"""
        if not self.config.webhook_secret:
            return True

        if not signature or not timestamp:
            return False

        try:
            ts = int(timestamp)
        except ValueError:
            return False

        payload_str = json.dumps(payload, sort_keys=True)
        return security_service.verify_signature(
            payload_str, signature, ts, self.config.webhook_secret
        )
