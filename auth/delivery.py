"""
auth/delivery.py -- Out-of-band delivery of codes and reset tokens.

Email delivery is an external collaborator. The recovery routes only need
something that satisfies TokenDelivery; the app wires LoggingDelivery by
default and tests swap in a recorder via app.state.delivery.

LoggingDelivery never writes the secret itself unless DEBUG is on, so a
production log stream cannot be used to take over accounts.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.models import TokenPurpose

logger = logging.getLogger("storefront.auth.delivery")


class TokenDelivery(Protocol):
    def send_reset_token(self, email: str, token: str) -> None: ...

    def send_otp(self, email: str, code: str, purpose: TokenPurpose) -> None: ...


class LoggingDelivery:
    def __init__(self, reveal_secrets: bool = False) -> None:
        self.reveal_secrets = reveal_secrets

    def send_reset_token(self, email: str, token: str) -> None:
        if self.reveal_secrets:
            logger.debug("Password reset token for %s: %s", email, token)
        logger.info("Password reset token queued for delivery")

    def send_otp(self, email: str, code: str, purpose: TokenPurpose) -> None:
        if self.reveal_secrets:
            logger.debug("%s code for %s: %s", purpose.value, email, code)
        logger.info("%s code queued for delivery", purpose.value)
