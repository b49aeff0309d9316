# ==== RELAY ORCHESTRATION SERVICE ==== #

"""
Relay orchestration for client submissions.

Ties the resilience components together for one submission:
admission → credential → formatting → delivery. Text-only submissions are
queued and acknowledged immediately. Submissions with an image are delivered
synchronously: the text leg first, then the image upload and image send, so
the image leg is only attempted once the text is known to have arrived.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from starlette.datastructures import UploadFile

from relay.errors import CredentialError, PartialDeliveryError, RateLimitExceeded, UpstreamError
from relay.integrations.feishu.client import FeishuClient
from relay.integrations.feishu.models import MessageSubmission, OutboundMessage
from relay.observability.logging import get_logger
from relay.observability.metrics import relay_submissions_total
from relay.observability.tracing import get_tracer
from relay.resilience import (
    AdmissionController,
    CredentialCache,
    DispatchQueue,
    DispatchTask,
    ResourceJanitor,
)
from relay.services.uploads import StoredUpload, UploadStore


logger = get_logger(__name__)
tracer = get_tracer(__name__)

T = TypeVar("T")


@dataclass
class RelayResult:
    """What the relay did with a submission."""
    status: str  # queued, sent
    text: str
    task: Optional[DispatchTask] = None
    image_key: Optional[str] = None

    def to_response(self) -> dict:
        if self.status == "queued":
            return {"status": "queued", "message": "Message queued for delivery"}
        body = {"status": "sent", "message": "Message sent successfully"}
        if self.image_key:
            body["image_key"] = self.image_key
        return body


class RelayService:
    """
    Orchestrates one submission across the resilience components.

    Instantiated once per process in the application lifespan and shared by
    all request handlers.
    """

    def __init__(
        self,
        client: FeishuClient,
        credentials: CredentialCache,
        admission: AdmissionController,
        queue: DispatchQueue,
        janitor: ResourceJanitor,
        uploads: UploadStore,
        open_chat_id: str,
    ):
        self.client = client
        self.credentials = credentials
        self.admission = admission
        self.queue = queue
        self.janitor = janitor
        self.uploads = uploads
        self.open_chat_id = open_chat_id

    async def submit(
        self,
        submission: MessageSubmission,
        client_key: str,
        image: Optional[UploadFile] = None,
    ) -> RelayResult:
        """
        Relay a validated submission.

        Args:
            submission: Parsed inbound fields
            client_key: Caller identity used for admission control
            image: Optional attachment, stored and removed by this call

        Returns:
            RelayResult: queued (text only) or sent (text + image)

        Raises:
            ValidationError: Bad attachment
            RateLimitExceeded: Client over its window budget
            CredentialError: No token could be obtained
            UpstreamError: Text leg failed (nothing delivered)
            PartialDeliveryError: Text delivered, image leg failed
            DispatchQueueClosed: Relay shutting down
        """
        kind = "image" if image is not None else "text"

        with tracer.start_as_current_span("relay_submit") as span:
            span.set_attribute("kind", kind)
            stored: Optional[StoredUpload] = None
            try:
                # Attachment errors short-circuit before admission
                validated = await self.uploads.read(image) if image is not None else None

                await self._admit(client_key)

                if validated is not None:
                    stored = await self.uploads.write(validated)

                await self.credentials.ensure()
                text = submission.to_text()

                if stored is None:
                    task = self.queue.enqueue(lambda: self.send_text(text), name="send_text")
                    result = RelayResult(status="queued", text=text, task=task)
                else:
                    image_key = await self._relay_with_image(text, stored)
                    result = RelayResult(status="sent", text=text, image_key=image_key)
            except Exception as e:
                relay_submissions_total.labels(kind=kind, outcome=type(e).__name__).inc()
                raise
            finally:
                if stored is not None:
                    await asyncio.to_thread(self.janitor.remove, stored.path)

        relay_submissions_total.labels(kind=kind, outcome=result.status).inc()
        logger.info(
            "Submission relayed",
            status=result.status,
            kind=kind,
            client_key=client_key,
        )
        return result

    async def send_text(self, text: str) -> Any:
        """Send a text message to the target chat (runs on the dispatch queue)."""
        return await self.with_reauth(
            lambda token: self.client.send_message(token, OutboundMessage.text(self.open_chat_id, text))
        )

    async def with_reauth(self, call: Callable[[str], Awaitable[T]]) -> T:
        """
        Run an outbound call with the current token, re-authenticating once.

        An authorization rejection invalidates the token the call used and
        retries the credential step and the call exactly once; a second
        rejection is raised to the caller.
        """
        credential = await self.credentials.ensure()
        try:
            return await call(credential.token)
        except UpstreamError as e:
            if not e.unauthorized:
                raise
            logger.warning(
                "Upstream rejected tenant access token, refreshing once",
                operation=e.operation,
                status_code=e.status_code,
                platform_code=e.platform_code,
            )

        self.credentials.invalidate(credential.token)
        credential = await self.credentials.ensure()
        return await call(credential.token)

    async def _admit(self, client_key: str) -> None:
        if not await self.admission.allow(client_key):
            retry_after = await self.admission.retry_after(client_key)
            logger.warning("Submission rate limited", client_key=client_key)
            raise RateLimitExceeded(client_key, retry_after=round(retry_after, 1))

    async def _relay_with_image(self, text: str, stored: StoredUpload) -> str:
        # Text leg: a failure here means nothing was delivered
        await self.send_text(text)

        try:
            try:
                content = await asyncio.to_thread(stored.path.read_bytes)
            except OSError as e:
                raise UpstreamError(
                    "Stored image could not be read",
                    operation="upload_image",
                    detail=str(e),
                ) from e

            image_key = await self.with_reauth(
                lambda token: self.client.upload_image(token, stored.original_name, content)
            )
            await self.with_reauth(
                lambda token: self.client.send_message(
                    token, OutboundMessage.image(self.open_chat_id, image_key)
                )
            )
        except (UpstreamError, CredentialError) as e:
            logger.error("Image leg failed after text delivery", error=e.message)
            raise PartialDeliveryError(e) from e

        return image_key
