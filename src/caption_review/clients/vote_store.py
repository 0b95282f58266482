"""Vote store clients: typed access to the remote caption vote table."""

import itertools
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..exceptions import NotFoundError
from ..models import RemoteVoteRecord
from ..utils.auth import SessionProvider
from .rest import RestClient

logger = logging.getLogger(__name__)

VOTE_TABLE = "caption_votes"
VOTE_COLUMNS = "id,caption_id,profile_id,vote_value,created_datetime_utc,modified_datetime_utc"

# Keeps in.(...) filters well under common URL length limits
IN_FILTER_BATCH = 100


class VoteStore(ABC):
    """Interface to the remote vote table. No business logic."""

    @abstractmethod
    async def find_vote(self, caption_id: str, identity_id: str) -> Optional[RemoteVoteRecord]:
        """Return the (caption, identity) row, or None."""

    @abstractmethod
    async def insert_vote(
        self,
        caption_id: str,
        identity_id: str,
        vote_value: int,
        created_at: datetime,
        modified_at: datetime,
    ) -> None:
        pass

    @abstractmethod
    async def update_vote(self, record_id: str, vote_value: int, modified_at: datetime) -> None:
        pass

    @abstractmethod
    async def delete_vote(self, caption_id: str, identity_id: str) -> None:
        """Delete the (caption, identity) row. Absence of the row is not an error."""

    @abstractmethod
    async def list_votes(
        self, identity_id: str, caption_ids: Optional[Iterable[str]] = None
    ) -> List[RemoteVoteRecord]:
        """All rows of one identity, optionally restricted to some captions."""

    async def close(self):
        pass


class InMemoryVoteStore(VoteStore):
    """Process-local vote table for offline sessions."""

    def __init__(self):
        self.rows: Dict[Tuple[str, str], RemoteVoteRecord] = {}
        self._ids = itertools.count(1)

    async def find_vote(self, caption_id, identity_id):
        return self.rows.get((caption_id, identity_id))

    async def insert_vote(self, caption_id, identity_id, vote_value, created_at, modified_at):
        record = RemoteVoteRecord(
            record_id=str(next(self._ids)),
            caption_id=caption_id,
            identity_id=identity_id,
            vote_value=vote_value,
            created_at=created_at,
            modified_at=modified_at,
        )
        self.rows[(caption_id, identity_id)] = record

    async def update_vote(self, record_id, vote_value, modified_at):
        for record in self.rows.values():
            if record.record_id == record_id:
                record.vote_value = vote_value
                record.modified_at = modified_at
                return
        raise NotFoundError("update_vote", f"No vote with id {record_id}", 404)

    async def delete_vote(self, caption_id, identity_id):
        self.rows.pop((caption_id, identity_id), None)

    async def list_votes(self, identity_id, caption_ids=None):
        wanted = set(caption_ids) if caption_ids is not None else None
        return [
            record
            for (caption_id, owner), record in self.rows.items()
            if owner == identity_id and (wanted is None or caption_id in wanted)
        ]


class RestVoteStore(VoteStore):
    """Vote table served through a PostgREST endpoint."""

    def __init__(self, config: Dict[str, Any], session_provider: SessionProvider, http=None):
        self.api_key = config.get("api_key")
        self.session_provider = session_provider
        headers = {"apikey": self.api_key} if self.api_key else {}
        self.http = http or RestClient(
            config["url"], timeout=config.get("timeout", 30.0), headers=headers
        )

    def _token(self) -> Optional[str]:
        session = self.session_provider.current_session()
        if session and session.access_token:
            return session.access_token
        return self.api_key

    async def _call(self, operation: str, method: str, **kwargs) -> Any:
        return await self.http.request(operation, method, VOTE_TABLE, token=self._token(), **kwargs)

    async def find_vote(self, caption_id, identity_id):
        rows = await self._call(
            "find_vote",
            "GET",
            params={
                "select": VOTE_COLUMNS,
                "caption_id": f"eq.{caption_id}",
                "profile_id": f"eq.{identity_id}",
                "limit": "1",
            },
        )
        if not rows:
            return None
        return RemoteVoteRecord.from_dict(rows[0])

    async def insert_vote(self, caption_id, identity_id, vote_value, created_at, modified_at):
        await self._call(
            "insert_vote",
            "POST",
            payload={
                "profile_id": identity_id,
                "caption_id": caption_id,
                "vote_value": vote_value,
                "created_datetime_utc": created_at.isoformat(),
                "modified_datetime_utc": modified_at.isoformat(),
            },
            headers={"Prefer": "return=minimal"},
            expect_json=False,
        )

    async def update_vote(self, record_id, vote_value, modified_at):
        await self._call(
            "update_vote",
            "PATCH",
            params={"id": f"eq.{record_id}"},
            payload={"vote_value": vote_value, "modified_datetime_utc": modified_at.isoformat()},
            headers={"Prefer": "return=minimal"},
            expect_json=False,
        )

    async def delete_vote(self, caption_id, identity_id):
        try:
            await self._call(
                "delete_vote",
                "DELETE",
                params={"caption_id": f"eq.{caption_id}", "profile_id": f"eq.{identity_id}"},
                expect_json=False,
            )
        except NotFoundError:
            logger.debug(f"No vote to delete for caption {caption_id}")

    async def list_votes(self, identity_id, caption_ids=None):
        base_params = {"select": VOTE_COLUMNS, "profile_id": f"eq.{identity_id}"}
        if caption_ids is None:
            rows = await self._call("list_votes", "GET", params=base_params)
            return [RemoteVoteRecord.from_dict(row) for row in rows or []]

        caption_ids = list(caption_ids)
        records = []
        for start in range(0, len(caption_ids), IN_FILTER_BATCH):
            batch = caption_ids[start : start + IN_FILTER_BATCH]
            params = dict(base_params, caption_id=f"in.({','.join(batch)})")
            rows = await self._call("list_votes", "GET", params=params)
            records.extend(RemoteVoteRecord.from_dict(row) for row in rows or [])
        return records

    async def close(self):
        await self.http.close()
