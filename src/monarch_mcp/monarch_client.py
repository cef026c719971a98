"""Monarch Money API client built on the GraphQL transport."""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from .exceptions import MonarchError, ValidationError, is_feature_unavailable
from .transport import GraphQLClient

logger = logging.getLogger(__name__)


WEB_GET_ACCOUNTS_PAGE = """
  query Web_GetAccountsPage($filters: AccountFilters) {
    hasAccounts
    accountTypeSummaries(filters: $filters) {
      type { name display group __typename }
      accounts {
        id
        syncDisabled
        isHidden
        isAsset
        includeInNetWorth
        includeBalanceInNetWorth
        order
        type { name display __typename }
        displayName
        displayBalance
        signedBalance
        updatedAt
        displayLastUpdatedAt
        limit
        mask
        subtype { display __typename }
        institution { id logo name __typename }
        __typename
      }
      isAsset
      totalDisplayBalance
      __typename
    }
  }
"""

WEB_GET_ACCOUNT_TYPES = """
  query Web_GetAccountTypes {
    accountTypes {
      name
      display
      group
      showForSyncedAccounts
      possibleSubtypes
      __typename
    }
  }
"""

COMMON_GET_AGGREGATE_SNAPSHOTS = """
  query Common_GetAggregateSnapshots($filters: AggregateSnapshotFilters) {
    aggregateSnapshots(filters: $filters) {
      date
      balance
      assetsBalance
      liabilitiesBalance
      __typename
    }
  }
"""

WEB_GET_ACCOUNTS_PAGE_RECENT_BALANCE = """
  query Web_GetAccountsPageRecentBalance($startDate: Date) {
    accounts {
      id
      recentBalances(startDate: $startDate)
      type { name __typename }
      includeInNetWorth
      __typename
    }
  }
"""

WEB_GET_CREDIT_SCORE_SNAPSHOTS = """
  query Web_GetCreditScoreSnapshots {
    creditScoreSnapshots {
      id
      score
      date
      __typename
    }
  }
"""

COMMON_GET_SPINWHEEL_USER = """
  query Common_GetSpinwheelCreditScoreSnapshots {
    spinwheelUser {
      id
      spinwheelUserId
      creditScoreTrackingStatus
      isBillSyncTrackingEnabled
      onboardingStatus
      onboardingErrorMessage
      __typename
    }
  }
"""


def _validate_date(value: Optional[str], field_name: str) -> Optional[str]:
    if value is None:
        return None
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be in YYYY-MM-DD format, got {value!r}")
    return value


class MonarchClient:
    """High-level Monarch Money client returning plain dictionaries."""

    def __init__(self, graphql: GraphQLClient):
        """Initialize Monarch client.

        Args:
            graphql: Transport used for every request
        """
        self.graphql = graphql

    async def _query(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        *,
        optional: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Run a query, mapping "feature unavailable" errors to None when optional.

        Only feature probes pass optional=True. Core data endpoints must see
        every error, including empty responses that point at schema drift.
        """
        try:
            return await self.graphql.query(query, variables)
        except MonarchError as e:
            if optional and is_feature_unavailable(e):
                logger.info("Optional feature unavailable for this account: %s", e)
                return None
            raise

    async def get_accounts(self, include_hidden: Optional[bool] = None) -> Dict[str, Any]:
        """Get accounts grouped by account type.

        Args:
            include_hidden: Include hidden accounts (default: API default)

        Returns:
            Dictionary with has_accounts flag and account groups
        """
        filters = {"includeHidden": include_hidden} if include_hidden is not None else None
        data = await self._query(WEB_GET_ACCOUNTS_PAGE, {"filters": filters})

        groups = []
        for summary in data.get("accountTypeSummaries") or []:
            accounts = []
            for account in summary.get("accounts") or []:
                accounts.append({
                    "id": account["id"],
                    "name": account.get("displayName"),
                    "type": (account.get("type") or {}).get("display"),
                    "subtype": (account.get("subtype") or {}).get("display"),
                    "balance": account.get("displayBalance") or 0,
                    "signed_balance": account.get("signedBalance"),
                    "is_asset": account.get("isAsset"),
                    "is_hidden": account.get("isHidden"),
                    "include_in_net_worth": account.get("includeInNetWorth"),
                    "institution": (account.get("institution") or {}).get("name"),
                    "last_updated": account.get("displayLastUpdatedAt"),
                })

            summary_type = summary.get("type") or {}
            groups.append({
                "type": summary_type.get("display") or summary_type.get("name"),
                "group": summary_type.get("group"),
                "is_asset": summary.get("isAsset"),
                "total_balance": summary.get("totalDisplayBalance") or 0,
                "accounts": accounts,
            })

        return {
            "has_accounts": bool(data.get("hasAccounts")),
            "account_groups": groups,
        }

    async def get_account_types(self) -> List[Dict[str, Any]]:
        """Get the account types and subtypes Monarch supports."""
        data = await self._query(WEB_GET_ACCOUNT_TYPES)
        return [
            {
                "name": account_type["name"],
                "display": account_type.get("display"),
                "group": account_type.get("group"),
                "possible_subtypes": account_type.get("possibleSubtypes") or [],
            }
            for account_type in data["accountTypes"]
        ]

    async def get_aggregate_snapshots(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        account_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Get net worth snapshots over time.

        Args:
            start_date: First date to include (YYYY-MM-DD)
            end_date: Last date to include (YYYY-MM-DD)
            account_type: Restrict to one account type (e.g. 'brokerage')

        Returns:
            List of snapshot dictionaries ordered as returned by the API
        """
        filters: Dict[str, Any] = {}
        if _validate_date(start_date, "start_date"):
            filters["startDate"] = start_date
        if _validate_date(end_date, "end_date"):
            filters["endDate"] = end_date
        if account_type:
            filters["accountType"] = account_type

        data = await self._query(COMMON_GET_AGGREGATE_SNAPSHOTS, {"filters": filters or None})
        return [
            {
                "date": snapshot["date"],
                "net_worth": snapshot.get("balance") or 0,
                "assets": snapshot.get("assetsBalance") or 0,
                "liabilities": snapshot.get("liabilitiesBalance") or 0,
            }
            for snapshot in data["aggregateSnapshots"]
        ]

    async def get_recent_balances(self, start_date: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get daily balances per account since start_date (YYYY-MM-DD)."""
        data = await self._query(
            WEB_GET_ACCOUNTS_PAGE_RECENT_BALANCE,
            {"startDate": _validate_date(start_date, "start_date")},
        )
        return [
            {
                "id": account["id"],
                "type": (account.get("type") or {}).get("name"),
                "include_in_net_worth": account.get("includeInNetWorth"),
                "recent_balances": account.get("recentBalances") or [],
            }
            for account in data["accounts"]
        ]

    async def get_credit_score_snapshots(self) -> List[Dict[str, Any]]:
        """Get credit score history, newest first.

        Credit tracking is optional; accounts without it get an empty list.
        """
        data = await self._query(WEB_GET_CREDIT_SCORE_SNAPSHOTS, optional=True)
        if data is None:
            return []

        snapshots = data.get("creditScoreSnapshots") or []
        result = []
        for i, snapshot in enumerate(snapshots):
            change = None
            if i < len(snapshots) - 1:
                change = snapshot["score"] - snapshots[i + 1]["score"]
            result.append({
                "id": snapshot["id"],
                "score": snapshot["score"],
                "date": snapshot["date"],
                "provider": "Spinwheel",
                "change": change,
            })
        return result

    async def get_spinwheel_user(self) -> Optional[Dict[str, Any]]:
        """Get credit tracking enrollment status, or None if not available."""
        data = await self._query(COMMON_GET_SPINWHEEL_USER, optional=True)
        if data is None or not data.get("spinwheelUser"):
            return None

        user = data["spinwheelUser"]
        return {
            "id": user["id"],
            "spinwheel_user_id": user.get("spinwheelUserId"),
            "credit_score_tracking_status": user.get("creditScoreTrackingStatus"),
            "bill_sync_tracking_enabled": user.get("isBillSyncTrackingEnabled"),
            "onboarding_status": user.get("onboardingStatus"),
            "onboarding_error": user.get("onboardingErrorMessage"),
        }
