import base64
import hashlib
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request

from bulkmend.settings import settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Trigger-Hmac-SHA256"

def compute_signature(secret: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 of the raw request body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()

class TriggerSignatureVerifier:
    """
    Verifies the trigger body signature against the shared secret.

    With no secret configured verification is skipped, for deployments where
    the trigger endpoint is only reachable from a trusted network.
    """

    def __init__(self, secret: Optional[str] = None):
        self._secret = secret

    @property
    def secret(self) -> Optional[str]:
        return self._secret if self._secret is not None else settings.TRIGGER_SHARED_SECRET

    async def __call__(
        self,
        request: Request,
        x_signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    ) -> None:
        secret = self.secret
        if not secret:
            return

        if not x_signature:
            logger.warning("Trigger rejected: missing signature header")
            raise HTTPException(status_code=401, detail="Missing Signature")

        # Body is cached by Starlette, so the route can still read it.
        body = await request.body()
        computed = compute_signature(secret, body)

        if not hmac.compare_digest(computed, x_signature):
            logger.warning("Trigger rejected: invalid signature")
            raise HTTPException(status_code=401, detail="Invalid Signature")
