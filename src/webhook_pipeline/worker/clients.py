from typing import List, Optional

import aiohttp
from loguru import logger

from webhook_pipeline.common.config import EmailConfig


class EmailError(Exception):
    pass


class ResendEmailClient:
    """Sends transactional e-mail through the Resend HTTP API."""

    def __init__(self, api_key: str, from_address: str, api_url: str, timeout: int = 10):
        self.api_key = api_key
        self.from_address = from_address
        self.api_url = api_url
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: EmailConfig) -> Optional["ResendEmailClient"]:
        if not config.api_key:
            logger.info("No e-mail API key configured, e-mail sending disabled")
            return None
        return cls(config.api_key, config.from_address, config.api_url, config.timeout)

    async def send(self, to: List[str], subject: str, text: str) -> str:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        body = {"from": self.from_address, "to": to, "subject": subject, "text": text}

        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.api_url,
                headers=headers,
                json=body,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status >= 400:
                    response_text = await response.text()
                    raise EmailError(
                        f"E-mail API returned {response.status}: {response_text}"
                    )
                data = await response.json()
                return data.get("id", "")

    async def send_deletion_reminder(
        self, email: str, user_name: str, days_remaining: int, cancel_url: str
    ) -> str:
        day_word = "day" if days_remaining == 1 else "days"
        return await self.send(
            [email],
            f"Your account will be deleted in {days_remaining} {day_word}",
            f"Hi {user_name},\n\nYour account is scheduled for deletion in "
            f"{days_remaining} {day_word}. To keep it, cancel the request at "
            f"{cancel_url}.\n",
        )

    async def send_deletion_completed(self, email: str, user_name: str) -> str:
        return await self.send(
            [email],
            "Your account has been deleted",
            f"Hi {user_name},\n\nYour account and all of its data have been deleted.\n",
        )


class HeartbeatClient:
    """Pings an uptime monitor. Without a URL every ping is a no-op."""

    def __init__(self, url: Optional[str] = None, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def ping(self) -> bool:
        if not self.url:
            return False
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    self.url, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status >= 400:
                        logger.warning(f"Heartbeat ping returned status {response.status}")
                        return False
                    return True
        except Exception as e:
            logger.warning(f"Heartbeat ping failed: {e}")
            return False
