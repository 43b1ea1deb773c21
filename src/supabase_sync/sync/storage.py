"""
Storage Transfer
================

Copies buckets and objects between the two storage APIs, then rewrites
stored references to the source's storage URLs so they point at the target.

Object transfers run concurrently, bounded by ``storage.concurrency``. The
storage client is blocking, so each call runs in a worker thread.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..clients.storage import LIST_PAGE_SIZE, BucketDescriptor, ObjectDescriptor
from ..config import SyncConfig
from ..errors import SyncError
from ..utils.formatting import format_bytes, shorten
from ..utils.sql import is_safe_identifier, qualified_name, quote_ident
from .schema import PLATFORM_SCHEMAS

logger = logging.getLogger(__name__)

URL_COLUMNS_QUERY = """
    SELECT c.table_schema, c.table_name, c.column_name
    FROM information_schema.columns c
    JOIN information_schema.tables t
        ON t.table_schema = c.table_schema AND t.table_name = c.table_name
    WHERE c.table_schema = ANY($1::text[])
      AND t.table_type = 'BASE TABLE'
      AND c.data_type IN ('text', 'character varying')
      AND c.column_name LIKE '%url%'
    ORDER BY c.table_schema, c.table_name, c.column_name
"""

AVATAR_REWRITE_QUERY = """
    UPDATE auth.users
    SET raw_user_meta_data = jsonb_set(
        raw_user_meta_data,
        '{avatar_url}',
        to_jsonb($2::text || substr(raw_user_meta_data->>'avatar_url', length($1::text) + 1))
    )
    WHERE left(raw_user_meta_data->>'avatar_url', length($1::text)) = $1::text
"""

MAX_LOGGED_ERRORS = 10


async def _in_thread(func, *args):
    return await asyncio.get_running_loop().run_in_executor(None, func, *args)


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 3"
    try:
        return int(str(status).split()[-1])
    except (ValueError, IndexError):
        return 0


@dataclass
class BucketSyncResult:
    bucket: str
    total: int = 0
    transferred: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "transferred": self.transferred,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class StorageSync:
    """Buckets, objects and URL references from source to target."""

    def __init__(self, config: SyncConfig, source_client, target_client, target_pool=None):
        self.config = config
        self.options = config.options.storage
        self.source = source_client
        self.target = target_client
        self.target_pool = target_pool

    @property
    def max_file_bytes(self) -> int:
        return self.options.max_file_size_mb * 1024 * 1024

    async def list_buckets(self) -> List[BucketDescriptor]:
        buckets = await _in_thread(self.source.list_buckets)
        excluded = set(self.options.exclude_buckets)
        return [b for b in buckets if b.name not in excluded]

    async def ensure_bucket(self, bucket: BucketDescriptor) -> bool:
        created = await _in_thread(self.target.create_bucket, bucket)
        if created:
            logger.info(f"Created bucket {bucket.name} (public={bucket.public})")
        else:
            logger.debug(f"Bucket {bucket.name} already exists on target")
        return created

    async def list_all_objects(self, bucket: str, prefix: str = "") -> List[ObjectDescriptor]:
        """Walk ``prefix`` recursively; entries without an id are folders."""
        objects: List[ObjectDescriptor] = []
        offset = 0
        while True:
            page = await _in_thread(
                self.source.list_entries, bucket, prefix, LIST_PAGE_SIZE, offset
            )
            for entry in page:
                path = f"{prefix}/{entry['name']}" if prefix else entry["name"]
                if entry.get("id"):
                    metadata = entry.get("metadata") or {}
                    objects.append(ObjectDescriptor(
                        path=path,
                        size=int(metadata.get("size") or 0),
                        content_type=metadata.get("mimetype"),
                        metadata=metadata,
                    ))
                else:
                    objects.extend(await self.list_all_objects(bucket, path))
            if len(page) < LIST_PAGE_SIZE:
                break
            offset += LIST_PAGE_SIZE
        return objects

    async def transfer_object(self, bucket: str, obj: ObjectDescriptor) -> None:
        data, content_type = await _in_thread(self.source.download, bucket, obj.path)
        await _in_thread(
            self.target.upload, bucket, obj.path, data, obj.content_type or content_type, True
        )

    async def sync_bucket(self, bucket: BucketDescriptor) -> BucketSyncResult:
        result = BucketSyncResult(bucket=bucket.name)
        objects = await self.list_all_objects(bucket.name)
        result.total = len(objects)

        to_transfer = []
        for obj in objects:
            if obj.size > self.max_file_bytes:
                result.skipped += 1
                logger.warning(
                    f"Skipping {bucket.name}/{obj.path}: {format_bytes(obj.size)} exceeds "
                    f"{self.options.max_file_size_mb} MB limit"
                )
            else:
                to_transfer.append(obj)

        semaphore = asyncio.Semaphore(self.options.concurrency)

        async def bounded(obj: ObjectDescriptor) -> None:
            async with semaphore:
                await self.transfer_object(bucket.name, obj)

        outcomes = await asyncio.gather(
            *(bounded(obj) for obj in to_transfer), return_exceptions=True
        )
        for obj, outcome in zip(to_transfer, outcomes):
            if isinstance(outcome, BaseException):
                result.failed += 1
                result.errors.append(f"{bucket.name}/{obj.path}: {outcome}")
                if result.failed <= MAX_LOGGED_ERRORS:
                    logger.warning(f"Failed to transfer {bucket.name}/{obj.path}: "
                                   f"{shorten(str(outcome))}")
            else:
                result.transferred += 1

        logger.info(
            f"Bucket {bucket.name}: {result.transferred}/{result.total} transferred, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
        return result

    async def preview(self, buckets: List[BucketDescriptor]) -> Dict[str, Any]:
        counts = {}
        for bucket in buckets:
            counts[bucket.name] = len(await self.list_all_objects(bucket.name))
            logger.info(f"[dry run] bucket {bucket.name}: {counts[bucket.name]} objects")
        return {"dry_run": True, "buckets": counts}

    async def sync(self) -> Dict[str, Any]:
        buckets = await self.list_buckets()
        logger.info(f"Found {len(buckets)} buckets to sync")
        if self.config.dry_run:
            return await self.preview(buckets)

        per_bucket: Dict[str, Dict[str, Any]] = {}
        errors: List[str] = []
        for bucket in buckets:
            try:
                await self.ensure_bucket(bucket)
                bucket_result = await self.sync_bucket(bucket)
            except SyncError as e:
                logger.warning(f"Bucket {bucket.name} failed: {e}")
                bucket_result = BucketSyncResult(
                    bucket.name, failed=1, errors=[f"{bucket.name}: {e}"]
                )
            per_bucket[bucket.name] = bucket_result.to_dict()
            errors.extend(bucket_result.errors)

        rewritten = await self.rewrite_storage_urls()
        return {"buckets": per_bucket, "urls_rewritten": rewritten, "errors": errors}

    def _url_prefixes(self) -> Optional[tuple]:
        source = self.config.source.api_url.rstrip("/")
        target = self.config.target.api_url.rstrip("/")
        if not source or not target or source == target:
            return None
        return source + "/", target + "/"

    @property
    def rewrite_schemas(self) -> List[str]:
        return [s for s in self.config.options.database.schemas if s not in PLATFORM_SCHEMAS]

    async def rewrite_storage_urls(self) -> int:
        """
        Point stored references at the target's storage.

        Rewrites ``auth.users.raw_user_meta_data->>'avatar_url'`` and every
        text column named like ``%url%`` in non-platform schemas, replacing
        only the leading source prefix.

        Returns:
            Number of rows updated
        """
        prefixes = self._url_prefixes()
        if prefixes is None or self.target_pool is None:
            logger.info("Storage URLs identical on both sides, nothing to rewrite")
            return 0
        source_prefix, target_prefix = prefixes
        total = 0

        async with self.target_pool.acquire() as conn:
            try:
                status = await conn.execute(AVATAR_REWRITE_QUERY, source_prefix, target_prefix)
                updated = _affected_rows(status)
                total += updated
                if updated:
                    logger.info(f"Rewrote {updated} avatar URLs in auth.users")
            except Exception as e:
                logger.warning(f"Could not rewrite avatar URLs: {e}")

            rows = await conn.fetch(URL_COLUMNS_QUERY, self.rewrite_schemas)
            for row in rows:
                schema, table, column = row["table_schema"], row["table_name"], row["column_name"]
                if not all(is_safe_identifier(name) for name in (schema, table, column)):
                    logger.warning(f"Skipping URL column with unusual name: {schema}.{table}.{column}")
                    continue
                col = quote_ident(column)
                statement = (
                    f"UPDATE {qualified_name(schema, table)} "
                    f"SET {col} = $2::text || substr({col}, length($1::text) + 1) "
                    f"WHERE left({col}, length($1::text)) = $1::text"
                )
                try:
                    updated = _affected_rows(await conn.execute(statement, source_prefix, target_prefix))
                except Exception as e:
                    logger.warning(f"Could not rewrite URLs in {schema}.{table}.{column}: {e}")
                    continue
                if updated:
                    logger.info(f"Rewrote {updated} URLs in {schema}.{table}.{column}")
                total += updated
        return total
