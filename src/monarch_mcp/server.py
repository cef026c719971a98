"""Monarch Money MCP Server - Main server implementation."""

import os
import json
import logging
from functools import lru_cache
from typing import Optional
from mcp.server import FastMCP
from dotenv import load_dotenv

from .auth import AuthService
from .exceptions import ValidationError
from .monarch_client import MonarchClient
from .transport import API_BASE_URL, GraphQLClient

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()

# Create MCP server
mcp = FastMCP("Monarch Money")


@lru_cache(maxsize=1)
def get_monarch_client() -> MonarchClient:
    """Get or create Monarch client instance (cached singleton).

    Returns:
        MonarchClient instance
    """
    logger.info("Getting Monarch client instance")
    auth = AuthService(session_path=os.getenv("MONARCH_SESSION_FILE"))
    graphql = GraphQLClient(auth, base_url=os.getenv("MONARCH_API_URL", API_BASE_URL))
    return MonarchClient(graphql)


async def authenticate(client: MonarchClient) -> None:
    """Make sure the client holds a session.

    Order of preference: MONARCH_TOKEN, a stored session file, then
    MONARCH_EMAIL/MONARCH_PASSWORD (with MONARCH_MFA_SECRET if set).

    Raises:
        ValidationError: If no credentials are configured
    """
    auth = client.graphql.auth
    token = os.getenv("MONARCH_TOKEN")
    session = auth.get_session() or await auth.load_session()

    if token:
        if session is None or session.token != token:
            await auth.login_with_token(token)
        return
    if session is not None:
        return

    email = os.getenv("MONARCH_EMAIL")
    password = os.getenv("MONARCH_PASSWORD")
    if not email or not password:
        error_msg = (
            "No Monarch session found. Set MONARCH_TOKEN, or MONARCH_EMAIL and "
            "MONARCH_PASSWORD (plus MONARCH_MFA_SECRET if MFA is enabled)."
        )
        logger.error(error_msg)
        raise ValidationError(error_msg)
    await auth.login(email, password, totp_secret=os.getenv("MONARCH_MFA_SECRET"))


async def get_authenticated_client() -> MonarchClient:
    client = get_monarch_client()
    await authenticate(client)
    return client


@mcp.tool()
async def get_accounts(include_hidden: Optional[bool] = None) -> str:
    """Get all accounts grouped by account type.

    Args:
        include_hidden: Include hidden accounts (optional)

    Returns:
        JSON string with account groups and their accounts
    """
    client = await get_authenticated_client()
    result = await client.get_accounts(include_hidden)
    return json.dumps(result, indent=2)


@mcp.tool()
async def get_account_types() -> str:
    """Get the account types and subtypes supported by Monarch.

    Returns:
        JSON string with list of account types
    """
    client = await get_authenticated_client()
    result = await client.get_account_types()
    return json.dumps(result, indent=2)


@mcp.tool()
async def get_net_worth_history(
    start_date: str = None,
    end_date: str = None,
    account_type: str = None,
) -> str:
    """Get net worth snapshots over time.

    Args:
        start_date: First date to include (YYYY-MM-DD format, optional)
        end_date: Last date to include (YYYY-MM-DD format, optional)
        account_type: Restrict to one account type, e.g. 'brokerage' (optional)

    Returns:
        JSON string with dated net worth, assets and liabilities
    """
    client = await get_authenticated_client()
    result = await client.get_aggregate_snapshots(start_date, end_date, account_type)
    return json.dumps(result, indent=2)


@mcp.tool()
async def get_recent_balances(start_date: str = None) -> str:
    """Get daily balances for every account.

    Args:
        start_date: First date to include (YYYY-MM-DD format, optional)

    Returns:
        JSON string with per-account balance series
    """
    client = await get_authenticated_client()
    result = await client.get_recent_balances(start_date)
    return json.dumps(result, indent=2)


@mcp.tool()
async def get_credit_score_history() -> str:
    """Get credit score history, newest first.

    Returns:
        JSON string with credit score snapshots (empty if credit tracking is off)
    """
    client = await get_authenticated_client()
    result = await client.get_credit_score_snapshots()
    return json.dumps(result, indent=2)


@mcp.tool()
async def get_credit_tracking_status() -> str:
    """Get credit score tracking enrollment status.

    Returns:
        JSON string with enrollment details, or null if credit tracking is unavailable
    """
    client = await get_authenticated_client()
    result = await client.get_spinwheel_user()
    return json.dumps(result, indent=2)


def main():
    """Entry point for the MCP server."""
    mcp.run(transport="stdio")
