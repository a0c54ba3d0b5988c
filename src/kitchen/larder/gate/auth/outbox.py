"""Hand-off of confirmation mail to the mailer.

Larder Gate does not send email itself. Each confirmation instruction is pushed as a JSON document
onto a Redis list that the mailer pops from.
"""

import json
import logging
import redis.asyncio as redis

from kitchen.larder.gate.model.users import User

logger = logging.getLogger(__name__)

CONFIRMATION_QUEUE_KEY = "larder:gate:outbox:confirmation"


class ConfirmationOutbox:
    def __init__(
        self, redis_client: redis.Redis, queue_key: str = CONFIRMATION_QUEUE_KEY
    ) -> None:
        self.redis_client = redis_client
        self.queue_key = queue_key

    async def publish(self, user: User, confirmation_token: str, expires_in: int) -> None:
        message = {
            "user_id": user.id,
            "email": user.email,
            "name": user.name,
            "confirmation_token": confirmation_token,
            "expires_in": expires_in,
        }
        await self.redis_client.rpush(self.queue_key, json.dumps(message))
        logger.info("Queued confirmation instructions for user %s", user.id)
