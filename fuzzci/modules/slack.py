# aiohttp client for the Slack Web API (chat.postMessage only)

from types import TracebackType
from typing import Optional, Type

from loguru import logger
from pydantic import BaseModel
import aiohttp

from fuzzci.common.shield import shield_and_wait
from fuzzci.common.types import NotificationDeliveryError
from fuzzci.config import SlackConfig

JSON_HEADERS = {"Content-Type": "application/json; charset=utf-8"}

class PostMessage(BaseModel):
    channel: str
    text: str

class SlackResponse(BaseModel):
    ok: bool
    warning: Optional[str] = None
    error: Optional[str] = None

class SlackClient:
    def __init__(self, config: SlackConfig):
        self.config = config
        self.headers = JSON_HEADERS | {"Authorization": f"Bearer {config.token}"}
        self.timeout = aiohttp.ClientTimeout(total=config.timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self._session = aiohttp.ClientSession(headers=self.headers, timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type: Optional[Type[BaseException]], exc_val: Optional[BaseException], exc_tb: Optional[TracebackType]):
        if self._session:
            await shield_and_wait(self._session.close()) # noqa: ASYNC102; shield_and_wait behaves like a CancelScope(shield=True)
            self._session = None

    async def _post(self, session: aiohttp.ClientSession, payload: PostMessage) -> SlackResponse:
        async with session.post(self.config.api_url, data=payload.model_dump_json()) as resp:
            resp.raise_for_status()
            return SlackResponse.model_validate_json(await resp.read())

    async def send(self, text: str) -> None:
        """
        POST chat.postMessage. Raises NotificationDeliveryError if Slack rejects the
        message and aiohttp errors if it cannot be reached.
        """
        payload = PostMessage(channel=self.config.channel, text=text)
        logger.trace(f"sending to slack: {text!r}")
        if self._session is not None:
            res = await self._post(self._session, payload)
        else:
            async with aiohttp.ClientSession(headers=self.headers, timeout=self.timeout) as session:
                res = await self._post(session, payload)

        if not res.ok:
            raise NotificationDeliveryError(f"slack rejected the message: {res.error or 'unknown error'}", extra={"channel": self.config.channel})
        if res.warning and res.warning != "missing_charset":
            logger.warning(f"slack warning while posting a message: {res.warning}")
