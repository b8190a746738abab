from datetime import timedelta
from typing import Optional

from jose import JWTError, jwt
from pydantic import ValidationError

from seat_inventory.config import settings
from seat_inventory.errors import InvalidToken
from seat_inventory.schemas.events import SubscriptionClaims
from seat_inventory.timeutils import Clock, utcnow


TOKEN_TYPE = "seat_updates"


class TokenVerifier:
    """Signs and checks the capability tokens that admit a client to a trip's seat updates.

    Tokens are HS256 JWTs carrying ``trip_id``, ``user_id`` and ``exp``. The
    auth collaborator mints them; the publisher only verifies them.
    """

    def __init__(self, secret_key: Optional[str] = None, algorithm: Optional[str] = None, clock: Clock = utcnow):
        self.secret_key = secret_key or settings.SECRET_KEY
        self.algorithm = algorithm or settings.JWT_ALGORITHM
        self._clock = clock

    def create_token(self, trip_id: int, user_id: int, ttl_seconds: int = 3600) -> str:
        expire = self._clock() + timedelta(seconds=ttl_seconds)
        payload = {"trip_id": trip_id, "user_id": user_id, "type": TOKEN_TYPE, "exp": int(expire.timestamp())}
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify(self, token: Optional[str], trip_id: int) -> SubscriptionClaims:
        if not token:
            raise InvalidToken("missing subscription token")
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise InvalidToken(f"malformed subscription token: {exc}") from exc
        try:
            claims = SubscriptionClaims.model_validate(payload)
        except ValidationError as exc:
            raise InvalidToken("subscription token is missing claims") from exc
        # exp is required by SubscriptionClaims and checked against the injected clock
        if claims.exp <= int(self._clock().timestamp()):
            raise InvalidToken("subscription token expired")
        if claims.trip_id != trip_id:
            raise InvalidToken(f"token for trip {claims.trip_id} used on trip {trip_id}")
        return claims
