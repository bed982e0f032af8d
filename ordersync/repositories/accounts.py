"""DuckDBStore seller account methods."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from ordersync.models import Account
from ordersync.repositories.orders import from_db_timestamp, to_db_timestamp

_ACCOUNT_COLUMNS = "id, user_id, seller_id, nickname, access_token, refresh_token, expires_at"


def _account_from_row(row: tuple) -> Account:
    return Account(
        id=row[0],
        user_id=row[1],
        seller_id=row[2],
        nickname=row[3],
        access_token=row[4] or "",
        refresh_token=row[5] or "",
        expires_at=from_db_timestamp(row[6]),
    )


class AccountsMixin:

    async def list_accounts(
        self,
        user_id: str,
        account_ids: Optional[List[str]] = None,
    ) -> List[Account]:
        """A user's accounts, optionally restricted to the given ids."""
        params: list = [user_id]
        id_filter = ""
        if account_ids:
            id_filter = f"AND id IN ({', '.join('?' for _ in account_ids)})"
            params.extend(account_ids)

        async with self.connection() as conn:
            rows = conn.execute(f"""
                SELECT {_ACCOUNT_COLUMNS}
                FROM accounts
                WHERE user_id = ? {id_filter}
                ORDER BY id
            """, params).fetchall()

        return [_account_from_row(row) for row in rows]

    async def get_account(self, account_id: str) -> Optional[Account]:
        async with self.connection() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = ?", [account_id]
            ).fetchone()
        return _account_from_row(row) if row else None

    async def save_account(self, account: Account) -> None:
        """Insert or update an account, tokens included."""
        async with self.connection() as conn:
            conn.execute("""
                INSERT INTO accounts
                    (id, user_id, seller_id, nickname, access_token, refresh_token, expires_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    user_id = EXCLUDED.user_id,
                    seller_id = EXCLUDED.seller_id,
                    nickname = EXCLUDED.nickname,
                    access_token = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    expires_at = EXCLUDED.expires_at,
                    updated_at = EXCLUDED.updated_at
            """, [
                account.id,
                account.user_id,
                account.seller_id,
                account.nickname,
                account.access_token,
                account.refresh_token,
                to_db_timestamp(account.expires_at),
                to_db_timestamp(datetime.now(timezone.utc)),
            ])
