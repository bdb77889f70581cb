"""
Policy Engine
==============
Loads the organisational LC workflow policy and answers the questions
the engines ask of it: how long an invitation lives, how many pending
invitations a trader may hold, how long a ledger call may block, how
many appeals a dispute allows, which currencies and Incoterms an LC
may use.

The policy layer separates what the engines CAN do from what they are
ALLOWED to do. A missing policy file falls back to built-in defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

POLICY_PATH = Path(__file__).resolve().parent / "policy.yaml"

DEFAULTS: dict[str, dict[str, Any]] = {
    "invitation_controls": {
        "default_timeout_days": 5,
        "max_pending_invitations": 10,
        "allow_duplicate_pending": False,
    },
    "lc_controls": {
        "lc_types": ["sight", "usance", "revolving"],
        "supported_currencies": [
            "USD", "EUR", "GBP", "JPY", "XLM", "USDC", "EURC", "CLIX", "USD1", "XAU", "XCOF",
        ],
        "incoterms": ["FOB", "CIF", "CFR", "EXW", "FCA", "CPT", "CIP", "DAT", "DAP", "DDP"],
        "document_types": [],
        "lock_timeout_seconds": 10,
    },
    "escrow_controls": {
        "ledger_timeout_seconds": 30,
        "capacity_check_advisory": True,
    },
    "dispute_controls": {
        "max_appeals": 1,
    },
    "archive_controls": {
        "hash_algorithm": "sha256",
        "message_types": ["m.room.message"],
    },
    "audit_controls": {
        "audit_every_mutation": True,
    },
}


# ---------------------------------------------------------------------------
# Policy Engine
# ---------------------------------------------------------------------------

class PolicyEngine:
    """
    Loads and provides access to the LC workflow policy.
    """

    def __init__(self, policy_path: Path | None = None,
                 overrides: dict[str, dict[str, Any]] | None = None) -> None:
        self._path = policy_path or POLICY_PATH
        self._policy: dict[str, Any] = {}
        self._load()
        for section, values in (overrides or {}).items():
            self._policy.setdefault(section, {}).update(values)

    def _load(self) -> None:
        if self._path.exists():
            with open(self._path, "r", encoding="utf-8") as f:
                self._policy = yaml.safe_load(f) or {}
        else:
            self._policy = {}

    # --- Core accessors ---

    @property
    def raw(self) -> dict[str, Any]:
        return self._policy

    @property
    def version(self) -> str:
        return self._policy.get("policy_version", "0.0.0")

    def _get(self, section: str, key: str) -> Any:
        value = self._policy.get(section, {}).get(key)
        if value is None:
            return DEFAULTS[section][key]
        return value

    # --- Invitations ---

    @property
    def invitation_timeout_days(self) -> int:
        return int(self._get("invitation_controls", "default_timeout_days"))

    @property
    def max_pending_invitations(self) -> int:
        return int(self._get("invitation_controls", "max_pending_invitations"))

    @property
    def allow_duplicate_pending(self) -> bool:
        return bool(self._get("invitation_controls", "allow_duplicate_pending"))

    # --- Letters of credit ---

    @property
    def lc_types(self) -> list[str]:
        return list(self._get("lc_controls", "lc_types"))

    @property
    def supported_currencies(self) -> list[str]:
        return list(self._get("lc_controls", "supported_currencies"))

    @property
    def incoterms(self) -> list[str]:
        return list(self._get("lc_controls", "incoterms"))

    @property
    def document_types(self) -> list[str]:
        return list(self._get("lc_controls", "document_types"))

    @property
    def lock_timeout_seconds(self) -> float:
        return float(self._get("lc_controls", "lock_timeout_seconds"))

    # --- Escrow ---

    @property
    def ledger_timeout_seconds(self) -> float:
        return float(self._get("escrow_controls", "ledger_timeout_seconds"))

    @property
    def capacity_check_advisory(self) -> bool:
        return bool(self._get("escrow_controls", "capacity_check_advisory"))

    # --- Disputes ---

    @property
    def max_appeals(self) -> int:
        return int(self._get("dispute_controls", "max_appeals"))

    # --- Archives ---

    @property
    def hash_algorithm(self) -> str:
        return str(self._get("archive_controls", "hash_algorithm"))

    @property
    def archivable_message_types(self) -> list[str]:
        return list(self._get("archive_controls", "message_types"))

    # --- Audit ---

    def should_audit(self) -> bool:
        """Returns True if every workflow mutation should be audit-logged."""
        return bool(self._get("audit_controls", "audit_every_mutation"))

    # --- Summary ---

    def summary(self) -> str:
        """Human-readable policy summary."""
        lines = [
            f"Policy Version: {self.version}",
            f"Last Reviewed:  {self._policy.get('last_reviewed', 'N/A')}",
            f"Approved By:    {self._policy.get('approved_by', 'N/A')}",
            "",
            "Workflow Settings:",
            f"  {'Invitation Timeout (days)':.<34} {self.invitation_timeout_days}",
            f"  {'Max Pending Invitations':.<34} {self.max_pending_invitations}",
            f"  {'Duplicate Pending Allowed':.<34} {self.allow_duplicate_pending}",
            f"  {'Ledger Timeout (s)':.<34} {self.ledger_timeout_seconds:g}",
            f"  {'Capacity Check Advisory':.<34} {self.capacity_check_advisory}",
            f"  {'Max Appeals':.<34} {self.max_appeals}",
            f"  {'Archive Hash':.<34} {self.hash_algorithm}",
            "",
            f"Currencies: {', '.join(self.supported_currencies)}",
            f"Incoterms:  {', '.join(self.incoterms)}",
            f"Audit Every Mutation: {self.should_audit()}",
        ]
        return "\n".join(lines)
