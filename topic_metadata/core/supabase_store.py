"""Supabase (PostgREST) implementation of the destination store."""

import json
from typing import Optional

import httpx
from postgrest import APIError
from postgrest.types import ReturnMethod
from supabase import Client, ClientOptions, create_client

from ..config import StoreConfig
from ..exceptions import StoreErrorKind, store_error
from ..logging_config import get_logger
from ..models import TopicFilters
from .store import TopicStore

logger = get_logger('supabase_store')

# Postgres SQLSTATE codes and classes
PG_STATEMENT_TIMEOUT = '57014'
PG_INSUFFICIENT_PRIVILEGE = '42501'
PG_RETRYABLE_TXN = {'40001', '40P01'}  # serialization failure, deadlock


def classify_api_error(error: APIError) -> StoreErrorKind:
    """Map a PostgREST error onto the closed StoreErrorKind set.

    PostgREST reports Postgres SQLSTATE codes (e.g. '57014'), its own
    'PGRSTnnn' codes, or the bare HTTP status when a gateway in front of it
    answered with a non-JSON body.
    """
    code = str(error.code or '').upper()

    if code.isdigit() and len(code) == 3:
        status = int(code)
        if status in (408, 504):
            return StoreErrorKind.TIMEOUT
        if status == 429:
            return StoreErrorKind.RATE_LIMITED
        if status == 413:
            return StoreErrorKind.PAYLOAD_TOO_LARGE
        if status in (401, 403):
            return StoreErrorKind.PERMISSION
        if status >= 500:
            return StoreErrorKind.UNAVAILABLE
        return StoreErrorKind.INVALID

    if code == PG_STATEMENT_TIMEOUT:
        return StoreErrorKind.TIMEOUT
    if code in PG_RETRYABLE_TXN or code.startswith('53'):
        return StoreErrorKind.UNAVAILABLE
    if code.startswith('08'):
        return StoreErrorKind.CONNECTION
    if code == PG_INSUFFICIENT_PRIVILEGE or code.startswith('PGRST3'):
        return StoreErrorKind.PERMISSION
    if code.startswith('23'):
        return StoreErrorKind.CONSTRAINT
    if code.startswith(('22', '42', 'PGRST')):
        return StoreErrorKind.INVALID
    return StoreErrorKind.UNKNOWN


class SupabaseTopicStore(TopicStore):
    """Reads the topics view and upserts into the metadata table via PostgREST."""

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        config: Optional[StoreConfig] = None,
        client: Optional[Client] = None,
    ):
        self.config = config or StoreConfig()
        self.client = client or create_client(
            url,
            key,
            options=ClientOptions(postgrest_client_timeout=self.config.timeout_seconds),
        )

    def _execute(self, operation: str, query):
        try:
            return query.execute()
        except APIError as e:
            kind = classify_api_error(e)
            logger.debug(f"{operation} failed with code {e.code!r}: {e.message}")
            raise store_error(operation, kind, reason=e.message) from e
        except httpx.TimeoutException as e:
            raise store_error(operation, StoreErrorKind.TIMEOUT, reason=str(e)) from e
        except httpx.TransportError as e:
            raise store_error(operation, StoreErrorKind.CONNECTION, reason=str(e)) from e

    def fetch_topics_page(self, offset: int, limit: int,
                          filters: Optional[TopicFilters] = None) -> list[dict]:
        query = self.client.table(self.config.topics_table).select('*')
        for column, value in (filters or TopicFilters()).as_columns().items():
            query = query.eq(column, value)
        query = query.order('topic_id').range(offset, offset + limit - 1)
        response = self._execute('fetch_topics', query)
        return response.data or []

    def fetch_metadata_ids_page(self, offset: int, limit: int) -> list[str]:
        query = (
            self.client.table(self.config.metadata_table)
            .select('topic_id')
            .order('topic_id')
            .range(offset, offset + limit - 1)
        )
        response = self._execute('fetch_metadata_ids', query)
        return [str(row['topic_id']) for row in response.data or []]

    def upsert_metadata(self, rows: list[dict]) -> None:
        if not rows:
            return
        query = self.client.table(self.config.metadata_table).upsert(
            rows,
            on_conflict='topic_id',
            returning=ReturnMethod.minimal,
        )
        self._execute('upsert_metadata', query)

    def get_metadata(self, topic_id: str) -> Optional[dict]:
        query = (
            self.client.table(self.config.metadata_table)
            .select('*')
            .eq('topic_id', topic_id)
            .limit(1)
        )
        rows = self._execute('get_metadata', query).data or []
        if not rows:
            return None
        row = dict(rows[0])
        # pgvector columns come back in their text form, e.g. "[0.1,0.2]"
        if isinstance(row.get('embedding'), str):
            row['embedding'] = json.loads(row['embedding'])
        return row
