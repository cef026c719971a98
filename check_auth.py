"""Quick script to verify Monarch Money authentication."""

import asyncio
from dotenv import load_dotenv
from monarch_mcp.server import authenticate, get_monarch_client
from monarch_mcp.exceptions import MonarchError

load_dotenv()

async def check_auth():
    """Authenticate with Monarch and list account groups."""
    try:
        client = get_monarch_client()
        await authenticate(client)
        print("✓ Monarch session established")

        accounts = await client.get_accounts()
        print(f"\n✓ Authentication successful!")
        print(f"\nFound {len(accounts['account_groups'])} account group(s):")
        for group in accounts["account_groups"]:
            print(f"  - {group['type']}: {len(group['accounts'])} account(s)")

        return True
    except MonarchError as e:
        print(f"✗ Authentication failed ({e.cause_category.value}): {e}")
        return False

if __name__ == "__main__":
    asyncio.run(check_auth())
