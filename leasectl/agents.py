"""Agent identities: bearer tokens of the form ``<agent id>.<secret>``.

Only a salted pbkdf2 hash of the secret is stored. The job engine never
authenticates; it receives an agent id and records liveness on every claim.
"""
import hashlib
import logging
import secrets
import sqlite3
from typing import List, Optional, Tuple

from .db import store_errors, transaction
from .errors import NotFound, ValidationError
from .models import AgentIdentity
from .utils import dumps_json, to_iso, utcnow

log = logging.getLogger(__name__)

HASH_ITERATIONS = 100_000


def _hash_secret(secret: str, salt: str) -> str:
    dk = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt.encode("utf-8"), HASH_ITERATIONS)
    return dk.hex()


def create_agent(conn: sqlite3.Connection, name: str) -> Tuple[AgentIdentity, str]:
    """Register an agent. Returns the identity and the bearer token (shown only once)."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Agent name is required.")

    secret = secrets.token_urlsafe(32)
    salt = secrets.token_hex(16)
    ts = to_iso(utcnow())
    with transaction(conn):
        cur = conn.execute(
            "INSERT INTO agents (name, token_hash, token_salt, created_at) VALUES (?, ?, ?, ?)",
            (name, _hash_secret(secret, salt), salt, ts),
        )
        agent_id = int(cur.lastrowid)
        conn.execute(
            "INSERT INTO audit_events (action, payload, created_at) VALUES (?, ?, ?)",
            ("agent.create", dumps_json({"agent_id": agent_id, "name": name}), ts),
        )

    log.info("Created agent %s (%s)", agent_id, name)
    return AgentIdentity(id=agent_id, name=name), f"{agent_id}.{secret}"


def authenticate(conn: sqlite3.Connection, token: str) -> Optional[AgentIdentity]:
    token = (token or "").strip()
    if not token:
        return None

    id_part, sep, secret = token.partition(".")
    if not sep or not id_part.isdigit() or not secret:
        return None

    with store_errors():
        row = conn.execute(
            "SELECT id, name, token_hash, token_salt, disabled FROM agents WHERE id=?",
            (int(id_part),),
        ).fetchone()
    if row is None or row["disabled"]:
        return None
    if not secrets.compare_digest(_hash_secret(secret, row["token_salt"]), row["token_hash"]):
        return None
    return AgentIdentity(id=int(row["id"]), name=row["name"])


def touch_agent(conn: sqlite3.Connection, agent_id: int, now: Optional[str] = None) -> bool:
    """Record agent liveness. False if no such agent exists.

    Callers that need atomicity with other writes run this inside their own transaction.
    """
    res = conn.execute(
        "UPDATE agents SET last_seen_at=? WHERE id=?",
        (now or to_iso(utcnow()), agent_id),
    )
    return res.rowcount == 1


def disable_agent(conn: sqlite3.Connection, agent_id: int) -> None:
    with transaction(conn):
        res = conn.execute("UPDATE agents SET disabled=1 WHERE id=?", (agent_id,))
    if res.rowcount != 1:
        raise NotFound(f"Agent {agent_id} not found.")


def list_agents(conn: sqlite3.Connection) -> List[sqlite3.Row]:
    with store_errors():
        return conn.execute(
            "SELECT id, name, disabled, created_at, last_seen_at FROM agents ORDER BY id"
        ).fetchall()
