"""
tapwallet CLI: pay-per-request wallet with a verified agent identity.

Commands:
    tapwallet init        Create the settlement wallet and default config
    tapwallet status      Wallet, balance, limits and identity overview
    tapwallet verify      Register a TAP agent and obtain an attestation
    tapwallet tap-status  Show TAP verification status and reputation
    tapwallet pay         Request a URL, paying its x402 challenge if any
    tapwallet limits      Show spend limits and the rolling daily total
    tapwallet history     Show recent spend-ledger entries
    tapwallet audit       View the audit trail
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click

from .agent import AgentWallet
from .challenge import PaymentChallenge
from .config import TapWalletConfig
from .payment import PaymentIntent
from .registry import Registration


def _agent_wallet(ctx: click.Context, confirm=None) -> AgentWallet:
    config: TapWalletConfig = ctx.obj["config"]
    return AgentWallet(config, confirm=confirm)


def _status_icon(status: str) -> str:
    return {"approved": "✅", "pending": "⏳"}.get(status, "❌")


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option("--home", type=click.Path(path_type=Path), default=None,
              help="Profile directory (default: ~/.tapwallet or $TAPWALLET_HOME)")
@click.option("-v", "--verbose", is_flag=True, help="Log protocol steps to stderr")
@click.pass_context
def main(ctx: click.Context, home: Optional[Path], verbose: bool):
    """tapwallet: x402 payments with a Trusted Agent Protocol identity."""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["config"] = TapWalletConfig.load(home=home)


@main.command()
@click.option("--force", is_flag=True, help="Replace an existing wallet (destroys the old key)")
@click.pass_context
def init(ctx: click.Context, force: bool):
    """Create the settlement wallet and write the default config."""
    agent = _agent_wallet(ctx)
    if agent.has_wallet() and not force:
        click.echo(f"ℹ️  Wallet already exists: {agent.wallet.address}")
        click.echo("   Pass --force to replace it (THIS DELETES THE CURRENT KEY)")
        return

    wallet = agent.create_wallet()
    if not agent.config.config_path.exists():
        agent.config.save()

    click.echo("✅ Wallet created")
    click.echo(f"   Address: {wallet.address}")
    click.echo(f"   Network: {agent.config.network}")
    click.echo("   Fund it by sending USDC on Base to the address above.")
    click.echo('   Run "tapwallet verify" to attach a verified identity.')


@main.command()
@click.pass_context
def status(ctx: click.Context):
    """Show wallet, balance, limits and identity status."""
    agent = _agent_wallet(ctx)
    address = agent.get_address()
    if not address["success"]:
        click.echo(f"❌ {address['error']}. Run \"tapwallet init\" first.", err=True)
        sys.exit(1)

    click.echo("👛 Wallet")
    click.echo(f"   Address: {address['address']}")
    click.echo(f"   Network: {address['network']}")

    balance = agent.check_balance()
    if balance["success"]:
        b = balance["balance"]
        click.echo(f"   Balance: {b['amount']} {b['currency']}")
    else:
        click.echo(f"   Balance: unavailable ({balance['error']})")

    summary = agent.validator.get_summary()
    click.echo("\n🛡️  Spend limits")
    click.echo(f"   Max per transaction: {summary['max_transaction_amount']}")
    click.echo(f"   Auto-approve under:  {summary['auto_approve_under']}")
    click.echo(f"   Daily limit:         {summary['daily_limit']} ({summary['daily_spent']} spent in 24h)")

    tap = agent.credentials.get_status()
    click.echo("\n🆔 Identity (TAP)")
    if tap.verified:
        click.echo(f"   Status:  Verified ✓ ({tap.identity_level.value.upper()})")
        click.echo(f"   Expires: {tap.days_until_expiry} days")
    elif tap.agent_id:
        click.echo("   Status:  Pending verification")
        click.echo('   Run "tapwallet verify" to complete')
    else:
        click.echo("   Status:  Not verified")


@main.command()
@click.option("--level", type=click.Choice(["email", "kyc", "kyb"]), default="kyc",
              help="Identity verification level")
@click.option("--name", default=None, help="Agent display name")
@click.option("--demo/--interactive", default=None,
              help="Demo completion, or wait for the browser identity check")
@click.option("--force", is_flag=True, help="Re-verify even if already verified")
@click.pass_context
def verify(ctx: click.Context, level: str, name: Optional[str], demo: Optional[bool], force: bool):
    """Register a TAP agent for this wallet and obtain an attestation."""
    agent = _agent_wallet(ctx)
    if demo is None:
        demo = agent.config.tap_demo

    def on_registered(registration: Registration):
        click.echo("✅ Registered with TAP registry")
        click.echo(f"   Agent ID: {registration.agent_id}")
        click.echo(f"   Key ID:   {registration.key_id}")
        if not demo:
            click.echo("\nComplete identity verification in your browser:")
            click.echo(f"   {registration.verification_url}")
            click.echo("⏳ Waiting for verification...")

    result = agent.verify_identity(
        level=level,
        name=name,
        interactive=not demo,
        force=force,
        on_registered=on_registered,
    )
    if not result["success"]:
        click.echo(f"❌ Verification failed: {result['error']}", err=True)
        sys.exit(1)
    if result["status"] == "already_verified":
        click.echo(f"ℹ️  {result['message']}. Pass --force to re-verify.")
        return

    click.echo("\n✅ TAP verification complete")
    click.echo(f"   Agent ID:   {result['agent_id']}")
    click.echo(f"   Identity:   {result['identity_level'].upper()} (verified)")
    click.echo(f"   Reputation: {result['reputation_score']:.1f} (new agent)")
    click.echo(f"   Expires:    {result['expires_at'][:10]}")


@main.command("tap-status")
@click.pass_context
def tap_status(ctx: click.Context):
    """Show TAP verification status and reputation."""
    agent = _agent_wallet(ctx)
    result = agent.get_tap_status()

    click.echo("🆔 TAP Status")
    if not result.get("agent_id"):
        click.echo("   Status:   Not configured")
        click.echo('   Run "tapwallet verify" to verify your identity.')
        return

    if not result["verified"]:
        click.echo("   Status:   Not verified")
        click.echo(f"   Agent ID: {result['agent_id']}")
        click.echo("   (Registered but verification pending or expired)")
        click.echo('   Run "tapwallet verify" to complete verification.')
        return

    click.echo("   Status:     Verified ✓")
    click.echo(f"   Agent ID:   {result['agent_id']}")
    click.echo(f"   Identity:   {result['identity_level'].upper()}")
    expires = (result["attestation_expires"] or "")[:10]
    days = result["days_until_expiry"]
    if result["renewal_due"]:
        click.echo(f"   Expires:    {expires} ({days} days - renew soon!)")
    else:
        click.echo(f"   Expires:    {expires} ({days} days)")
    if result["reputation_score"] is not None:
        click.echo(f"   Reputation: {result['reputation_score']:.1f}")
    click.echo(f"   Registry:   {result['registry_url']}")


@main.command()
@click.argument("url")
@click.option("--method", "-X", default="GET", help="HTTP method")
@click.option("--data", "-d", default=None, help="Request body")
@click.option("--max-amount", type=float, default=None, help="Most you are willing to pay (USD)")
@click.option("--description", default="", help="Ledger description")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation above the auto-approve threshold")
@click.pass_context
def pay(
    ctx: click.Context,
    url: str,
    method: str,
    data: Optional[str],
    max_amount: Optional[float],
    description: str,
    yes: bool,
):
    """Request URL, paying its x402 challenge if one is returned."""

    def confirm(challenge: PaymentChallenge, intent: PaymentIntent) -> bool:
        if yes:
            return True
        return click.confirm(
            f"Pay ${challenge.amount_usd:.2f} to {challenge.pay_to} for {intent.merchant}?",
            default=False,
        )

    agent = _agent_wallet(ctx, confirm=confirm)
    result = agent.payment_request(
        url,
        method=method,
        description=description,
        max_amount=max_amount,
        body=data,
    )
    if not result["success"]:
        click.echo(f"❌ Payment failed: {result['error']}", err=True)
        sys.exit(1)

    if result["paid"]:
        click.echo(f"✅ Paid ${result['amount_usd']:.2f} to {result['pay_to']}")
        click.echo(f"   Entry:     {result['entry_id']}")
        if result["tx_hash"]:
            click.echo(f"   Tx hash:   {result['tx_hash']}")
        click.echo(f"   TAP signed: {'yes' if result['tap_signed'] else 'no'}")
    else:
        click.echo(f"ℹ️  No payment required (HTTP {result['status_code']})")

    payload = result.get("data")
    click.echo(payload if isinstance(payload, str) else json.dumps(payload, indent=2))


@main.command()
@click.pass_context
def limits(ctx: click.Context):
    """Show spend limits and the rolling 24h total."""
    summary = _agent_wallet(ctx).validator.get_summary()
    click.echo("🛡️  Spend limits")
    click.echo(f"   Max per transaction: {summary['max_transaction_amount']}")
    click.echo(f"   Auto-approve under:  {summary['auto_approve_under']}")
    click.echo(f"   Daily limit:         {summary['daily_limit']}")
    click.echo(f"   Spent (24h):         {summary['daily_spent']}")
    click.echo(f"   Remaining (24h):     {summary['daily_remaining']}")


@main.command()
@click.option("--limit", type=int, default=10, help="Number of entries")
@click.pass_context
def history(ctx: click.Context, limit: int):
    """Show recent spend-ledger entries."""
    result = _agent_wallet(ctx).transaction_history(limit)
    if not result["transactions"]:
        click.echo("No transactions yet.")
        return
    for tx in result["transactions"]:
        ts = time.strftime("%Y-%m-%d %H:%M", time.localtime(tx["timestamp"]))
        click.echo(
            f"  {ts} {_status_icon(tx['status'])} ${tx['amount_usd']:.2f} → {tx['merchant']}"
            + (f" ({tx['description']})" if tx["description"] else "")
        )


@main.command()
@click.option("--limit", type=int, default=20, help="Number of events")
@click.pass_context
def audit(ctx: click.Context, limit: int):
    """View the audit trail."""
    events = _agent_wallet(ctx).audit.read_events(limit=limit)
    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" ${event.amount_usd:.2f}" if event.amount_usd else ""
        merchant = f" → {event.merchant}" if event.merchant else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{merchant}{reason}")


if __name__ == "__main__":
    main()
