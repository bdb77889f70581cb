"""
LC Engine — CLI Interface
==========================
File-backed front end to the trade finance desk. Every command opens
the desk rooted at --home (records, message log, ledger and audit
trail live there) and runs one operation.

Commands:
  invite          — Invite a counterparty to negotiate an LC
  invitations     — List a user's sent and received invitations
  respond         — Accept or reject an invitation
  invite-cancel   — Withdraw a pending invitation
  lc-create       — Create a DRAFT LC from an accepted invitation
  lc-sign         — Record a party's sign-off
  lc-advance      — Move an LC along the state machine
  lc-cancel       — Cancel an LC
  lc-status       — Show one LC, or list all
  ledger-open     — Register and credit a ledger account
  escrow-fund     — Fund escrow from the buyer
  escrow-release  — Release escrowed funds
  escrow-refund   — Refund the whole escrow balance to the buyer
  escrow-balance  — Show the escrow account of an LC
  reconcile       — Re-query the ledger for a pending transfer
  dispute-raise   — Open a dispute on an LC
  dispute-review  — Assign an arbiter
  dispute-evidence — Add evidence to a dispute
  dispute-resolve — Issue a binding resolution
  dispute-appeal  — Appeal a resolution
  trades          — List sealed trades
  archive-verify  — Verify a stored chat archive
  archive-export  — Export the chat archive of a sealed trade
  policy          — Display the LC workflow policy
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lc_engine.desk import OperationResult, TradeFinanceDesk
from lc_engine.errors import LCEngineError
from lc_engine.invitations import InvitationParty
from lc_engine.lc_lifecycle import LCStatus
from lc_engine.policy_engine import PolicyEngine
from lc_engine.schema_loader import OUTPUT_DIR, load_lc_terms
from lc_engine.trade_archive import ChatArchive, verify_archive_integrity
from lc_engine._icons import (
    ICON_CHECK,
    ICON_CROSS,
    ICON_WARN,
    INVITATION_STATUS_ICONS,
    LC_STATUS_ICONS,
)

console = Console()

STATUS_COLOR = {
    "draft": "blue", "negotiating": "blue", "signed": "cyan", "funded": "green",
    "shipped": "yellow", "documents_submitted": "yellow", "delivered": "green",
    "completed": "dim", "disputed": "red", "cancelled": "dim",
}


def _desk(home: Path) -> TradeFinanceDesk:
    return TradeFinanceDesk.bootstrap(home)


def _unwrap(result: OperationResult) -> Any:
    """Return the payload, or print the error and exit 1."""
    if result.success:
        return result.data
    error = result.error or {}
    console.print(f"[red]{ICON_CROSS} {error.get('code')}: {error.get('message')}[/red]")
    if error.get("retryable"):
        console.print(f"[yellow]{ICON_WARN} Retryable. Run the same command again.[/yellow]")
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI Group
# ---------------------------------------------------------------------------

@click.group()
@click.version_option("1.0.0", prog_name="LC Engine")
@click.option("--home", type=click.Path(file_okay=False, path_type=Path), default=OUTPUT_DIR,
              show_default=True, help="Directory holding records, ledger and audit trail.")
@click.pass_context
def main(ctx: click.Context, home: Path):
    """LC Engine — Letter of Credit workflow with escrow settlement"""
    ctx.obj = home


# ---------------------------------------------------------------------------
# invite
# ---------------------------------------------------------------------------

@main.command("invite")
@click.option("--from-user", required=True, help="Initiator user id.")
@click.option("--from-matrix", required=True, help="Initiator chat id.")
@click.option("--role", required=True, type=click.Choice(["buyer", "seller"]),
              help="Initiator's role; the invitee takes the other.")
@click.option("--to-user", required=True, help="Invitee user id.")
@click.option("--to-matrix", required=True, help="Invitee chat id.")
@click.option("--title", "-t", required=True, help="LC title.")
@click.option("--message", "-m", default="")
@click.pass_obj
def invite_cmd(home: Path, from_user: str, from_matrix: str, role: str,
               to_user: str, to_matrix: str, title: str, message: str):
    """Invite a counterparty to negotiate an LC."""
    other = "seller" if role == "buyer" else "buyer"
    desk = _desk(home)
    invitation = _unwrap(desk.send_invitation(
        InvitationParty(from_user, role, from_matrix),
        InvitationParty(to_user, other, to_matrix),
        title, message,
    ))
    console.print()
    console.print(Panel(
        invitation.summary(),
        title=f"INVITATION SENT -- {invitation.invitation_id}",
        border_style="blue",
    ))


# ---------------------------------------------------------------------------
# invitations
# ---------------------------------------------------------------------------

@main.command("invitations")
@click.option("--user", "-u", required=True, help="User id.")
@click.pass_obj
def invitations_cmd(home: Path, user: str):
    """List a user's sent and received invitations."""
    listing = _unwrap(_desk(home).list_invitations(user))
    if not listing.sent and not listing.received:
        console.print(f"\n{ICON_WARN} No invitations found.")
        return

    table = Table(title=f"Invitations -- {user}")
    table.add_column("ID", style="cyan")
    table.add_column("Direction", style="dim")
    table.add_column("Status", style="yellow")
    table.add_column("Title", style="green")
    table.add_column("Counterparty", style="dim")
    table.add_column("Expires", style="dim")

    for direction, invitations in (("sent", listing.sent), ("received", listing.received)):
        for inv in invitations:
            other = inv.invitee if direction == "sent" else inv.initiator
            icon = INVITATION_STATUS_ICONS.get(inv.status.value, "")
            table.add_row(inv.invitation_id, direction, f"{icon} {inv.status.value}",
                          inv.lc_title, other.user_id, inv.expires_at)

    console.print()
    console.print(table)
    console.print(f"Pending: {listing.sent_pending} sent, {listing.received_pending} received")


# ---------------------------------------------------------------------------
# respond
# ---------------------------------------------------------------------------

@main.command("respond")
@click.option("--invitation-id", "-i", required=True)
@click.option("--user", "-u", required=True, help="Invitee user id.")
@click.option("--accept/--reject", default=True)
@click.option("--message", "-m", default="")
@click.pass_obj
def respond_cmd(home: Path, invitation_id: str, user: str, accept: bool, message: str):
    """Accept or reject an invitation."""
    invitation = _unwrap(_desk(home).respond_to_invitation(invitation_id, user, accept, message))
    console.print()
    console.print(Panel(
        invitation.summary(),
        title=f"INVITATION {invitation.status.value.upper()}",
        border_style="green" if accept else "red",
    ))


# ---------------------------------------------------------------------------
# invite-cancel
# ---------------------------------------------------------------------------

@main.command("invite-cancel")
@click.option("--invitation-id", "-i", required=True)
@click.option("--user", "-u", required=True, help="Initiator user id.")
@click.pass_obj
def invite_cancel_cmd(home: Path, invitation_id: str, user: str):
    """Withdraw a pending invitation."""
    invitation = _unwrap(_desk(home).cancel_invitation(invitation_id, user))
    console.print(f"{ICON_CHECK} Invitation {invitation.invitation_id} cancelled.")


# ---------------------------------------------------------------------------
# lc-create
# ---------------------------------------------------------------------------

@main.command("lc-create")
@click.option("--terms", "-f", required=True, type=click.Path(exists=True),
              help="Path to LC terms YAML file.")
@click.option("--authorization-id", "-a", required=True)
@click.option("--actor", required=True, help="Chat id of the creating party.")
@click.pass_obj
def lc_create_cmd(home: Path, terms: str, authorization_id: str, actor: str):
    """Create a DRAFT LC from an accepted invitation."""
    try:
        terms_data = load_lc_terms(terms)
    except (LCEngineError, FileNotFoundError, ValueError) as e:
        console.print(f"[red]{ICON_CROSS} Terms load failed:[/red] {e}")
        sys.exit(1)

    lc = _unwrap(_desk(home).create_lc(terms_data, authorization_id, actor))
    console.print()
    console.print(Panel(
        lc.summary(),
        title=f"LC CREATED -- {lc.display_number}",
        border_style="blue",
    ))


# ---------------------------------------------------------------------------
# lc-sign
# ---------------------------------------------------------------------------

@main.command("lc-sign")
@click.option("--lc-id", "-l", required=True)
@click.option("--actor", required=True)
@click.pass_obj
def lc_sign_cmd(home: Path, lc_id: str, actor: str):
    """Record a party's sign-off on the negotiated terms."""
    lc = _unwrap(_desk(home).sign_lc(lc_id, actor))
    console.print()
    console.print(Panel(
        lc.summary(),
        title=f"LC {lc.display_number} -- {lc.status.value}",
        border_style=STATUS_COLOR.get(lc.status.value, "white"),
    ))


# ---------------------------------------------------------------------------
# lc-advance
# ---------------------------------------------------------------------------

@main.command("lc-advance")
@click.option("--lc-id", "-l", required=True)
@click.option("--to-status", "-s", required=True,
              type=click.Choice([s.value for s in LCStatus if s != LCStatus.DRAFT]))
@click.option("--actor", required=True)
@click.option("--reason", "-r", default="")
@click.option("--expected-version", type=int, default=None)
@click.option("--escrow-address", default=None)
@click.option("--settlement-key", default=None, help="Idempotency key of a settled transfer.")
@click.option("--bl-number", default=None, help="Bill of lading number.")
@click.option("--carrier", default=None)
@click.option("--shipment-date", default=None)
@click.option("--dispute-id", default=None)
@click.pass_obj
def lc_advance_cmd(
    home: Path, lc_id: str, to_status: str, actor: str, reason: str,
    expected_version: int | None, escrow_address: str | None, settlement_key: str | None,
    bl_number: str | None, carrier: str | None, shipment_date: str | None,
    dispute_id: str | None,
):
    """Move an LC along the state machine."""
    evidence: dict[str, Any] = {}
    if escrow_address:
        evidence["escrow_address"] = escrow_address
    if settlement_key:
        evidence["settlement_key"] = settlement_key
    if dispute_id:
        evidence["dispute_id"] = dispute_id
    if bl_number:
        evidence["shipment"] = {
            "bill_of_lading_number": bl_number,
            "carrier": carrier or "",
            "shipment_date": shipment_date or "",
        }

    lc = _unwrap(_desk(home).advance(lc_id, to_status, actor, evidence,
                                     expected_version, reason))
    console.print()
    console.print(Panel(
        lc.summary(),
        title=f"LC {lc.display_number} -- {lc.status.value}",
        border_style=STATUS_COLOR.get(lc.status.value, "white"),
    ))


# ---------------------------------------------------------------------------
# lc-cancel
# ---------------------------------------------------------------------------

@main.command("lc-cancel")
@click.option("--lc-id", "-l", required=True)
@click.option("--actor", required=True)
@click.option("--reason", "-r", required=True)
@click.pass_obj
def lc_cancel_cmd(home: Path, lc_id: str, actor: str, reason: str):
    """Cancel an LC before funding."""
    lc = _unwrap(_desk(home).cancel_lc(lc_id, actor, reason))
    console.print(f"{ICON_CHECK} LC {lc.display_number} cancelled: {reason}")


# ---------------------------------------------------------------------------
# lc-status
# ---------------------------------------------------------------------------

@main.command("lc-status")
@click.option("--lc-id", "-l", default=None, help="Show specific LC. If omitted, lists all LCs.")
@click.option("--status", "-s", default=None, type=click.Choice([s.value for s in LCStatus]))
@click.option("--party", "-p", default=None, help="Only LCs with this buyer or seller.")
@click.pass_obj
def lc_status_cmd(home: Path, lc_id: str | None, status: str | None, party: str | None):
    """Show LC lifecycle status."""
    desk = _desk(home)

    if lc_id:
        lc = _unwrap(desk.get_lc(lc_id))
        console.print()
        console.print(Panel(
            lc.summary(),
            title=f"LC {lc.display_number} -- {lc.status.value}",
            border_style=STATUS_COLOR.get(lc.status.value, "white"),
        ))
        return

    lcs = _unwrap(desk.list_lcs(status=status, party=party))
    if not lcs:
        console.print(f"\n{ICON_WARN} No LCs found.")
        return

    table = Table(title="Letters of Credit")
    table.add_column("LC ID", style="cyan")
    table.add_column("Number", style="dim")
    table.add_column("Status", style="yellow")
    table.add_column("Amount", style="green", justify="right")
    table.add_column("Buyer", style="dim")
    table.add_column("Seller", style="dim")
    table.add_column("Progress", style="dim", justify="right")

    for lc in lcs:
        icon = LC_STATUS_ICONS.get(lc.status.value, "")
        table.add_row(
            lc.lc_id, lc.display_number, f"{icon} {lc.status.value}",
            f"{lc.terms.amount:,} {lc.terms.currency}",
            lc.terms.buyer.name, lc.terms.seller.name, f"{lc.progress}%",
        )

    console.print()
    console.print(table)


# ---------------------------------------------------------------------------
# ledger-open
# ---------------------------------------------------------------------------

@main.command("ledger-open")
@click.option("--account", required=True, help="Ledger account (wallet address or chat id).")
@click.option("--currency", required=True)
@click.option("--amount", default="0", help="Opening deposit.")
@click.option("--secret", default=None, help="Require this secret for transfers out.")
@click.pass_obj
def ledger_open_cmd(home: Path, account: str, currency: str, amount: str, secret: str | None):
    """Register and credit an account on the local ledger."""
    desk = _desk(home)
    if secret:
        desk.ledger.register_account(account, secret)
    desk.ledger.deposit(account, currency, amount)
    balance = desk.ledger.query_balance(account, currency)
    console.print(f"{ICON_CHECK} {account}: {balance:,} {currency}")


# ---------------------------------------------------------------------------
# escrow-fund
# ---------------------------------------------------------------------------

@main.command("escrow-fund")
@click.option("--lc-id", "-l", required=True)
@click.option("--buyer", required=True, help="Buyer chat id.")
@click.option("--escrow-address", required=True)
@click.option("--amount", required=True)
@click.option("--currency", required=True)
@click.option("--secret", required=True, help="Buyer account authorization secret.")
@click.option("--key", default=None, help="Idempotency key (default fund:<lc-id>).")
@click.pass_obj
def escrow_fund_cmd(home: Path, lc_id: str, buyer: str, escrow_address: str, amount: str,
                    currency: str, secret: str, key: str | None):
    """Fund escrow from the buyer's account."""
    receipt = _unwrap(_desk(home).fund_escrow(lc_id, buyer, escrow_address, amount,
                                              currency, secret, key))
    console.print(f"{ICON_CHECK} {receipt.summary()}")


# ---------------------------------------------------------------------------
# escrow-release
# ---------------------------------------------------------------------------

@main.command("escrow-release")
@click.option("--lc-id", "-l", required=True)
@click.option("--escrow-address", required=True)
@click.option("--recipient", required=True, help="Destination ledger account.")
@click.option("--amount", required=True)
@click.option("--currency", required=True)
@click.option("--authorization", required=True, help="Escrow release authorization.")
@click.option("--purpose", default="settlement",
              type=click.Choice(["settlement", "refund"]))
@click.option("--key", default=None, help="Idempotency key (default <purpose>:<lc-id>).")
@click.pass_obj
def escrow_release_cmd(home: Path, lc_id: str, escrow_address: str, recipient: str,
                       amount: str, currency: str, authorization: str, purpose: str,
                       key: str | None):
    """Release escrowed funds."""
    receipt = _unwrap(_desk(home).release_funds(lc_id, escrow_address, recipient, amount,
                                                currency, authorization, purpose, key))
    console.print(f"{ICON_CHECK} {receipt.summary()}")


# ---------------------------------------------------------------------------
# escrow-refund
# ---------------------------------------------------------------------------

@main.command("escrow-refund")
@click.option("--lc-id", "-l", required=True)
@click.option("--actor", required=True)
@click.option("--authorization", required=True, help="Escrow release authorization.")
@click.option("--reason", "-r", required=True)
@click.pass_obj
def escrow_refund_cmd(home: Path, lc_id: str, actor: str, authorization: str, reason: str):
    """Refund the whole escrow balance to the buyer and cancel the LC."""
    receipt = _unwrap(_desk(home).refund_buyer(lc_id, actor, authorization, reason))
    console.print(f"{ICON_CHECK} {receipt.summary()}")


# ---------------------------------------------------------------------------
# escrow-balance
# ---------------------------------------------------------------------------

@main.command("escrow-balance")
@click.option("--lc-id", "-l", required=True)
@click.pass_obj
def escrow_balance_cmd(home: Path, lc_id: str):
    """Show the escrow account of an LC."""
    account = _unwrap(_desk(home).escrow_account(lc_id))
    table = Table(title=f"Escrow -- {lc_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in account.to_dict().items():
        table.add_row(key, str(value))
    console.print()
    console.print(table)


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------

@main.command("reconcile")
@click.option("--key", required=True, help="Idempotency key of the pending transfer.")
@click.pass_obj
def reconcile_cmd(home: Path, key: str):
    """Re-query the ledger for a pending transfer."""
    receipt = _unwrap(_desk(home).reconcile(key))
    console.print(receipt.summary())


# ---------------------------------------------------------------------------
# dispute-raise
# ---------------------------------------------------------------------------

@main.command("dispute-raise")
@click.option("--lc-id", "-l", required=True)
@click.option("--actor", required=True)
@click.option("--reason", "-r", required=True)
@click.pass_obj
def dispute_raise_cmd(home: Path, lc_id: str, actor: str, reason: str):
    """Open a dispute and freeze the LC."""
    dispute = _unwrap(_desk(home).raise_dispute(lc_id, actor, reason))
    console.print()
    console.print(Panel(
        dispute.summary(),
        title=f"DISPUTE RAISED -- {dispute.dispute_id}",
        border_style="red",
    ))


# ---------------------------------------------------------------------------
# dispute-review
# ---------------------------------------------------------------------------

@main.command("dispute-review")
@click.option("--dispute-id", "-d", required=True)
@click.option("--arbiter", required=True)
@click.pass_obj
def dispute_review_cmd(home: Path, dispute_id: str, arbiter: str):
    """Assign an arbiter and open the review."""
    dispute = _unwrap(_desk(home).begin_review(dispute_id, arbiter))
    console.print(f"{ICON_CHECK} Dispute {dispute.dispute_id} under review by {arbiter}.")


# ---------------------------------------------------------------------------
# dispute-evidence
# ---------------------------------------------------------------------------

@main.command("dispute-evidence")
@click.option("--dispute-id", "-d", required=True)
@click.option("--actor", required=True)
@click.option("--description", required=True)
@click.option("--file", "path", default=None, type=click.Path(exists=True),
              help="Evidence file; its content is hashed into the record.")
@click.pass_obj
def dispute_evidence_cmd(home: Path, dispute_id: str, actor: str, description: str,
                         path: str | None):
    """Add evidence to an open dispute."""
    item: dict[str, Any] = {"description": description}
    if path:
        item["content"] = Path(path).read_bytes()
    dispute = _unwrap(_desk(home).submit_evidence(dispute_id, actor, [item]))
    console.print(f"{ICON_CHECK} Dispute {dispute.dispute_id} now holds "
                  f"{len(dispute.evidence)} evidence item(s).")


# ---------------------------------------------------------------------------
# dispute-resolve
# ---------------------------------------------------------------------------

@main.command("dispute-resolve")
@click.option("--dispute-id", "-d", required=True)
@click.option("--arbiter", required=True)
@click.option("--decision", required=True,
              type=click.Choice(["release_to_seller", "refund_to_buyer", "split"]))
@click.option("--buyer-amount", default="0")
@click.option("--seller-amount", default="0")
@click.option("--reasoning", required=True)
@click.option("--authorization", default=None, help="Escrow release authorization.")
@click.pass_obj
def dispute_resolve_cmd(home: Path, dispute_id: str, arbiter: str, decision: str,
                        buyer_amount: str, seller_amount: str, reasoning: str,
                        authorization: str | None):
    """Issue a binding resolution and release the escrow."""
    dispute = _unwrap(_desk(home).resolve_dispute(dispute_id, arbiter, decision, buyer_amount,
                                                  seller_amount, reasoning, authorization))
    console.print()
    console.print(Panel(
        dispute.summary(),
        title=f"DISPUTE RESOLVED -- {dispute.dispute_id}",
        border_style="green",
    ))


# ---------------------------------------------------------------------------
# dispute-appeal
# ---------------------------------------------------------------------------

@main.command("dispute-appeal")
@click.option("--dispute-id", "-d", required=True)
@click.option("--actor", required=True)
@click.option("--reason", "-r", default="")
@click.pass_obj
def dispute_appeal_cmd(home: Path, dispute_id: str, actor: str, reason: str):
    """Appeal a dispute resolution."""
    dispute = _unwrap(_desk(home).appeal(dispute_id, actor, reason))
    console.print(f"{ICON_WARN} Dispute {dispute.dispute_id} appealed "
                  f"(round {dispute.review_round}).")


# ---------------------------------------------------------------------------
# trades
# ---------------------------------------------------------------------------

@main.command("trades")
@click.option("--search", "-q", default=None)
@click.option("--limit", default=20, show_default=True)
@click.pass_obj
def trades_cmd(home: Path, search: str | None, limit: int):
    """List sealed trades."""
    desk = _desk(home)
    result = _unwrap(desk.query_trades(search=search, limit=limit))
    if not result.trades:
        console.print(f"\n{ICON_WARN} No trades found.")
        return

    table = Table(title=f"Trades ({result.total} total)")
    table.add_column("Trade ID", style="cyan")
    table.add_column("Order", style="dim")
    table.add_column("Status", style="yellow")
    table.add_column("Value", style="green", justify="right")
    table.add_column("Archived", style="dim")

    for t in result.trades:
        table.add_row(t.trade_id, t.order_id, t.status.value,
                      f"{t.total_value:,} {t.counter_asset.code}",
                      ICON_CHECK if t.is_archived else "")

    console.print()
    console.print(table)


# ---------------------------------------------------------------------------
# archive-verify
# ---------------------------------------------------------------------------

@main.command("archive-verify")
@click.option("--file", "path", required=True, type=click.Path(exists=True),
              help="Chat archive JSON file.")
def archive_verify_cmd(path: str):
    """Recompute and check a chat archive hash."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            archive = ChatArchive.from_dict(json.load(f))
    except (KeyError, TypeError, ValueError) as e:
        console.print(f"[red]{ICON_CROSS} Archive load failed:[/red] {e}")
        sys.exit(1)

    if verify_archive_integrity(archive):
        console.print(f"{ICON_CHECK} Archive {archive.room_id} intact "
                      f"({archive.message_count} messages, {archive.archive_hash[:16]}...)")
    else:
        console.print(f"[red]{ICON_CROSS} Archive {archive.room_id} FAILED integrity check[/red]")
        sys.exit(1)


# ---------------------------------------------------------------------------
# archive-export
# ---------------------------------------------------------------------------

@main.command("archive-export")
@click.option("--trade-id", "-t", required=True)
@click.option("--format", "fmt", default="txt", type=click.Choice(["json", "txt", "csv"]))
@click.option("--output", "-o", default=None, type=click.Path(dir_okay=False),
              help="Write to file instead of stdout.")
@click.pass_obj
def archive_export_cmd(home: Path, trade_id: str, fmt: str, output: str | None):
    """Export the chat archive of a sealed trade."""
    desk = _desk(home)
    trade = _unwrap(desk.get_trade(trade_id))
    if trade.chat_archive is None:
        console.print(f"[red]{ICON_CROSS} Trade {trade_id} has no chat archive.[/red]")
        sys.exit(1)

    text = _unwrap(desk.export_archive(trade.chat_archive, fmt))
    if output:
        Path(output).write_text(text, encoding="utf-8")
        console.print(f"{ICON_CHECK} Archive written to {output}")
    else:
        click.echo(text)


# ---------------------------------------------------------------------------
# policy
# ---------------------------------------------------------------------------

@main.command("policy")
def policy_cmd():
    """Display the LC workflow policy."""
    policy = PolicyEngine()
    console.print()
    console.print(Panel(
        policy.summary(),
        title=f"LC POLICY v{policy.version}",
        border_style="blue",
    ))


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
