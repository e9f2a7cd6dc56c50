"""Tenant credential and workspace identifier generation.

Secrets are drawn from :mod:`secrets` (the OS CSPRNG).  Only the SHA-256
fingerprint and a short display prefix are ever persisted; the plaintext
leaves this module once, inside the :class:`Credential` returned to the
orchestrator, and is handed to the customer exactly once.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass, field

from provisioner.errors import InvalidWorkspaceId

# 32 bytes of entropy rendered as 64 hex characters.
_SECRET_BYTES = 32

# Characters of the secret (after the prefix) kept for display.
_DISPLAY_CHARS = 8

# Strict allowlist for workspace identifiers.  Used as a path component and
# as a provider resource name, so it is kept lowercase and short.
WORKSPACE_ID_PATTERN = re.compile(r"^ws_[a-z0-9]{1,12}_[a-f0-9]{8}$")

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class Credential:
    """A freshly generated tenant API key."""

    secret: str = field(repr=False)
    fingerprint: str
    display_prefix: str


def fingerprint(secret: str) -> str:
    """Return the hex SHA-256 digest used to store *secret* at rest."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_credential(prefix: str = "tnk_") -> Credential:
    """Generate a 256-bit API key carrying a recognisable *prefix*.

    Parameters
    ----------
    prefix:
        Human-recognisable prefix, e.g. ``tnk_``.  Lets leaked keys be
        spotted by secret scanners and log redaction.

    Returns
    -------
    Credential
        The plaintext secret, its fingerprint, and a display prefix safe to
        store and show in dashboards.
    """
    secret = prefix + secrets.token_hex(_SECRET_BYTES)
    return Credential(
        secret=secret,
        fingerprint=fingerprint(secret),
        display_prefix=secret[: len(prefix) + _DISPLAY_CHARS],
    )


def verify_credential(secret: str, expected_fingerprint: str) -> bool:
    """Constant-time check of *secret* against a stored fingerprint."""
    return hmac.compare_digest(fingerprint(secret), expected_fingerprint)


def derive_workspace_id(billing_customer_id: str) -> str:
    """Derive a fresh workspace identifier for a billing customer.

    The slug keeps the identifier recognisable in provider consoles; the
    random suffix guarantees a new namespace for every provisioning attempt.
    """
    raw = billing_customer_id.lower()
    if raw.startswith("cus_"):
        raw = raw[len("cus_") :]
    slug = _SLUG_STRIP_RE.sub("", raw)[:12] or "tenant"
    workspace_id = f"ws_{slug}_{secrets.token_hex(4)}"
    validate_workspace_id(workspace_id)
    return workspace_id


def validate_workspace_id(workspace_id: str) -> str:
    """Return *workspace_id* unchanged, or raise :class:`InvalidWorkspaceId`."""
    if not WORKSPACE_ID_PATTERN.fullmatch(workspace_id):
        raise InvalidWorkspaceId(f"Invalid workspace id: must match {WORKSPACE_ID_PATTERN.pattern!r}")
    return workspace_id
