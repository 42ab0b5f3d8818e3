"""Identity extraction from the bearer JWT."""

import logging

import jwt

from log_tailer.models import ConfigError, Identity

logger = logging.getLogger(__name__)


class IdentityError(ConfigError):
    """The JWT cannot be decoded or carries no user id."""


def extract_identity(token: str) -> Identity:
    """Read userId (`sub`) and optional agentId from an unverified JWT payload.

    The signature is checked by the store on every request.
    """
    if not token:
        raise IdentityError("No JWT token specified")
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise IdentityError(f"Could not decode JWT: {e}") from e

    user_id = claims.get("sub")
    if not user_id or not isinstance(user_id, str):
        raise IdentityError("JWT has no user id ('sub' claim)")

    agent_id = claims.get("agent_id")
    if agent_id is None:
        metadata = claims.get("user_metadata") or {}
        if isinstance(metadata, dict):
            agent_id = metadata.get("agent_id")
    if agent_id is not None:
        agent_id = str(agent_id)

    logger.info("Identity: user_id=%s agent_id=%s", user_id, agent_id)
    return Identity(user_id=user_id, agent_id=agent_id)
