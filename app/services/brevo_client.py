"""
Brevo client: transactional email and CRM contacts.

- POST /smtp/email  sender, to, subject, htmlContent, attachment[] (base64)
- POST /contacts    email, attributes, listIds, updateEnabled
"""

import base64
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx

from ..exceptions import SideEffectError
from .http_client import JsonHttpClient

logger = logging.getLogger(__name__)


@dataclass
class EmailAttachment:
    name: str
    content: bytes

    def to_payload(self) -> Dict[str, str]:
        return {"name": self.name, "content": base64.b64encode(self.content).decode("ascii")}


class BrevoClient(JsonHttpClient):
    name = "brevo"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        sender_email: str,
        sender_name: str,
        timeout: float = 10,
        http_client: Optional[httpx.Client] = None
    ):
        super().__init__(base_url, timeout=timeout, max_retries=1, base_delay=0, http_client=http_client)
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "api-key": self.api_key,
        }

    def send_email(
        self,
        to_email: str,
        subject: str,
        html: str,
        to_name: Optional[str] = None,
        attachments: Optional[List[EmailAttachment]] = None
    ) -> Optional[str]:
        recipient = {"email": to_email}
        if to_name:
            recipient["name"] = to_name
        payload = {
            "sender": {"email": self.sender_email, "name": self.sender_name},
            "to": [recipient],
            "subject": subject,
            "htmlContent": html,
        }
        if attachments:
            payload["attachment"] = [a.to_payload() for a in attachments]

        response = self._make_request("POST", "/smtp/email", payload=payload)
        if not response.success:
            raise SideEffectError(f"Email send failed: {response.error}", retryable=False)
        message_id = (response.data or {}).get("messageId") if isinstance(response.data, dict) else None
        logger.info(f"Sent email '{subject}' to {to_email}")
        return message_id

    def upsert_contact(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        list_ids: Optional[List[int]] = None
    ) -> Optional[str]:
        attributes = {}
        if first_name:
            attributes["FIRSTNAME"] = first_name
        if last_name:
            attributes["LASTNAME"] = last_name
        if phone:
            attributes["SMS"] = phone

        payload = {"email": email, "attributes": attributes, "updateEnabled": True}
        if list_ids:
            payload["listIds"] = list_ids

        response = self._make_request("POST", "/contacts", payload=payload)
        if not response.success:
            raise SideEffectError(f"CRM contact upsert failed: {response.error}", retryable=False)
        # 201 returns {"id": ...}, 204 (updated) has no body
        if isinstance(response.data, dict) and response.data.get("id") is not None:
            return str(response.data["id"])
        return None
