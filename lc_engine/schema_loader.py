"""
Schema Loader — Loads and structurally validates LC terms YAML files.

This module is the structured input gate for file-based input (the CLI).
Nothing enters the state machine without passing through here or through
LCTerms.from_dict.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from lc_engine.errors import ValidationError


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

ROOT_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = ROOT_DIR / "data"
OUTPUT_DIR = ROOT_DIR / "output"
RECORDS_DIR = OUTPUT_DIR / "records"
AUDIT_DIR = OUTPUT_DIR / "audit"


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dictionary."""
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        raise ValueError(f"Empty YAML file: {path}")
    return data


# ---------------------------------------------------------------------------
# LC Terms Loading
# ---------------------------------------------------------------------------

REQUIRED_TERMS = [
    "lc_type", "amount", "currency", "buyer", "seller", "commodity",
    "quantity", "unit_price", "incoterms", "port_of_loading",
    "port_of_destination", "expiry_date", "latest_shipment_date",
    "required_documents",
]

REQUIRED_PARTY = ["name", "address", "matrix_id"]


def load_lc_terms(path: str | Path) -> dict[str, Any]:
    """
    Load and structurally validate an LC terms YAML file.

    Returns the terms dict (the value under the top-level 'lc_terms' key).
    Raises ValidationError if required fields are missing. Business rules
    (amount = quantity x unit price, date ordering) are checked later by
    LCTerms.validate.
    """
    path = Path(path)
    raw = _load_yaml(path)

    terms = raw.get("lc_terms")
    if terms is None:
        raise ValidationError(f"Terms file {path.name} missing top-level 'lc_terms' key.")

    missing = [f for f in REQUIRED_TERMS if terms.get(f) in (None, "", [])]
    if missing:
        raise ValidationError(
            f"LC terms in {path.name} missing required fields: " + ", ".join(missing),
            details={"missing": missing},
        )

    for side in ("buyer", "seller"):
        party = terms[side]
        if not isinstance(party, dict):
            raise ValidationError(f"LC terms '{side}' must be a mapping.")
        party_missing = [f for f in REQUIRED_PARTY if not party.get(f)]
        if party_missing:
            raise ValidationError(
                f"LC {side} missing required fields: " + ", ".join(party_missing),
                details={"party": side, "missing": party_missing},
            )

    # YAML turns unquoted dates into date objects
    for key in ("expiry_date", "latest_shipment_date"):
        terms[key] = str(terms[key])

    return terms

