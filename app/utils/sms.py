import logging
import uuid

import telnyx

from app.errors import SendFailure

_LOGGER = logging.getLogger(__name__)


class TelnyxGateway:
    """Outbound messaging gateway. ``send`` returns the gateway message id."""

    def __init__(self, api_key: str | None, from_number: str | None):
        self.api_key = api_key
        self.from_number = from_number

    @property
    def dev_mode(self) -> bool:
        return not self.api_key or not self.from_number

    def send(self, to: str, body: str) -> str:
        if not to:
            raise SendFailure("recipient phone missing")
        if self.dev_mode:
            message_id = f"dev-{uuid.uuid4()}"
            _LOGGER.info("[SMS] DEV mode: would send to %s (%s): %s", to, message_id, body)
            return message_id
        try:
            msg = telnyx.Message.create(
                from_=self.from_number, to=to, text=body, api_key=self.api_key
            )
        except telnyx.error.TelnyxError as exc:
            raise SendFailure(f"telnyx rejected message to {to}: {exc}") from exc
        return msg.id
