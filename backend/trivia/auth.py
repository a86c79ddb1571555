"""Identity gate: turns a bearer credential into a verified Identity."""

from dataclasses import dataclass
from typing import Optional
import time

import jwt as pyjwt
from flask import current_app
from flask_login import UserMixin

from trivia.errors import AuthenticationFailure


@dataclass(frozen=True)
class Identity(UserMixin):
    id: str
    name: str

    def get_id(self):
        return self.id

    def to_dict(self):
        return {'id': self.id, 'name': self.name}


def issue_token(identity_id: str, name: str, ttl_sec: int = 24 * 3600) -> str:
    cfg = current_app.config
    now = int(time.time())
    payload = {'sub': str(identity_id), 'name': name, 'iat': now, 'exp': now + ttl_sec}
    return pyjwt.encode(payload, cfg['JWT_SECRET'], algorithm=cfg['JWT_ALGORITHM'])


def verify(credential: Optional[str]) -> Identity:
    """Return the Identity carried by ``credential`` or raise AuthenticationFailure."""
    if not credential:
        raise AuthenticationFailure('No token')
    cfg = current_app.config
    try:
        claims = pyjwt.decode(credential, cfg['JWT_SECRET'], algorithms=[cfg['JWT_ALGORITHM']])
    except pyjwt.ExpiredSignatureError:
        raise AuthenticationFailure('Token expired')
    except pyjwt.InvalidTokenError as exc:
        raise AuthenticationFailure(f'Invalid token: {exc}')
    subject = claims.get('sub')
    if not subject:
        raise AuthenticationFailure('Token has no subject')
    return Identity(id=str(subject), name=claims.get('name') or str(subject))


def bearer_token(header_value: Optional[str]) -> Optional[str]:
    raw = header_value or ''
    return raw[7:] if raw.startswith('Bearer ') else None


def load_identity_from_request(request):
    """Flask-Login request loader for the read-only HTTP API."""
    from trivia.services import get_engine
    try:
        return get_engine().verifier(bearer_token(request.headers.get('Authorization')))
    except AuthenticationFailure as exc:
        current_app.logger.info(f"[auth] http request rejected: {exc}")
        return None
