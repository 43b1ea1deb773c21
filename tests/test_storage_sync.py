"""Tests for bucket/object transfer and storage URL rewriting."""

import json

from conftest import FakeDatabase, FakePool, FakeStorageClient, make_config, run

from supabase_sync.clients.storage import BucketDescriptor
from supabase_sync.errors import ErrorCategory, SyncError
from supabase_sync.sync.storage import StorageSync

SOURCE_API = "https://source.example.com"
TARGET_API = "https://target.example.com"


def make_source():
    buckets = [
        BucketDescriptor("avatars", public=True, allowed_mime_types=["image/png"]),
        BucketDescriptor("documents"),
        BucketDescriptor("scratch"),
    ]
    objects = {
        "avatars": {
            "u1/face.png": (b"png-1", "image/png"),
            "u2/face.png": (b"png-2", "image/png"),
            "u2/old/face.png": (b"png-0", "image/png"),
        },
        "documents": {
            "readme.txt": (b"hello", "text/plain"),
            "big.bin": (b"x" * (2 * 1024 * 1024), "application/octet-stream"),
        },
        "scratch": {"tmp.txt": (b"tmp", "text/plain")},
    }
    return FakeStorageClient(buckets, objects)


def make_sync(tmp_path, source=None, target=None, target_db=None, **options):
    storage = {"exclude_buckets": ["scratch"], "max_file_size_mb": 1}
    storage.update(options)
    config = make_config(tmp_path, options={"storage": storage})
    source = source or make_source()
    target = target or FakeStorageClient()
    pool = FakePool(target_db) if target_db is not None else None
    return StorageSync(config, source, target, pool), source, target


class TestObjectTransfer:

    def test_recursive_listing_descends_folders(self, tmp_path):
        sync, _, _ = make_sync(tmp_path)

        objects = run(sync.list_all_objects("avatars"))

        assert sorted(o.path for o in objects) == [
            "u1/face.png", "u2/face.png", "u2/old/face.png",
        ]
        assert all(o.content_type == "image/png" for o in objects)

    def test_listing_pages_through_large_folders(self, tmp_path):
        objects = {"bulk": {f"f{i:04d}.txt": (b"1", "text/plain") for i in range(2500)}}
        source = FakeStorageClient([BucketDescriptor("bulk")], objects)
        sync, _, _ = make_sync(tmp_path, source=source)

        listed = run(sync.list_all_objects("bulk"))

        assert len(listed) == 2500

    def test_buckets_created_and_objects_copied(self, tmp_path):
        sync, _, target = make_sync(tmp_path)

        details = run(sync.sync())

        assert set(target.buckets) == {"avatars", "documents"}
        assert target.buckets["avatars"].public is True
        assert target.buckets["avatars"].allowed_mime_types == ["image/png"]
        assert target.objects["avatars"]["u2/old/face.png"] == (b"png-0", "image/png")
        assert details["buckets"]["avatars"] == {
            "total": 3, "transferred": 3, "skipped": 0, "failed": 0,
        }

    def test_oversized_objects_skipped(self, tmp_path):
        sync, _, target = make_sync(tmp_path)

        details = run(sync.sync())

        assert "big.bin" not in target.objects["documents"]
        assert details["buckets"]["documents"]["skipped"] == 1
        assert details["buckets"]["documents"]["transferred"] == 1

    def test_existing_bucket_is_not_an_error(self, tmp_path):
        target = FakeStorageClient([BucketDescriptor("avatars")])
        sync, _, target = make_sync(tmp_path, target=target)

        details = run(sync.sync())

        assert details["errors"] == []
        assert len(target.objects["avatars"]) == 3

    def test_failed_object_isolated(self, tmp_path):
        source = make_source()
        source.fail_paths = {"u2/face.png"}
        sync, _, target = make_sync(tmp_path, source=source)

        details = run(sync.sync())

        assert details["buckets"]["avatars"] == {
            "total": 3, "transferred": 2, "skipped": 0, "failed": 1,
        }
        assert set(target.objects["avatars"]) == {"u1/face.png", "u2/old/face.png"}
        assert len(details["errors"]) == 1
        assert details["errors"][0].startswith("avatars/u2/face.png:")

    def test_failed_bucket_does_not_stop_the_others(self, tmp_path):
        class RejectingTarget(FakeStorageClient):
            def create_bucket(self, bucket):
                if bucket.name == "avatars":
                    raise SyncError("Create bucket avatars failed (400)", ErrorCategory.STORAGE)
                return super().create_bucket(bucket)

        target_db = make_target_db()
        sync, _, target = make_sync(tmp_path, target=RejectingTarget(), target_db=target_db)

        details = run(sync.sync())

        assert "avatars" not in target.buckets
        assert target.objects["documents"]["readme.txt"] == (b"hello", "text/plain")
        assert details["buckets"]["avatars"] == {
            "total": 0, "transferred": 0, "skipped": 0, "failed": 1,
        }
        assert details["buckets"]["documents"]["transferred"] == 1
        assert len(details["errors"]) == 1
        assert details["errors"][0].startswith("avatars: ")
        assert details["urls_rewritten"] > 0

    def test_concurrency_is_bounded(self, tmp_path):
        objects = {"bulk": {f"f{i}.txt": (b"1", "text/plain") for i in range(12)}}
        source = FakeStorageClient([BucketDescriptor("bulk")], objects)
        target = FakeStorageClient(delay=0.02)
        sync, _, target = make_sync(tmp_path, source=source, target=target, concurrency=3)

        run(sync.sync())

        assert len(target.objects["bulk"]) == 12
        assert 1 <= target.max_in_flight <= 3

    def test_dry_run_lists_only(self, tmp_path):
        config = make_config(tmp_path, dry_run=True,
                             options={"storage": {"exclude_buckets": ["scratch"]}})
        target = FakeStorageClient()
        sync = StorageSync(config, make_source(), target)

        details = run(sync.sync())

        assert details == {"dry_run": True, "buckets": {"avatars": 3, "documents": 2}}
        assert target.buckets == {}


# =============================================================================
# URL rewriting
# =============================================================================

def make_target_db():
    db = FakeDatabase({
        "auth.users": [
            {"id": "u1", "raw_user_meta_data": json.dumps(
                {"avatar_url": f"{SOURCE_API}/storage/v1/object/public/avatars/u1/face.png"})},
            {"id": "u2", "raw_user_meta_data": json.dumps(
                {"avatar_url": "https://cdn.example.org/u2.png"})},
        ],
        "public.profiles": [
            {"id": 1, "avatar_url": f"{SOURCE_API}/storage/v1/object/public/avatars/u1/face.png"},
            {"id": 2, "avatar_url": f"https://mirror.example.net/?u={SOURCE_API}/storage/x"},
            {"id": 3, "avatar_url": None},
        ],
    })
    db.url_columns = [
        ("public", "profiles", "avatar_url"),
        ("public", 'bad"name', "url"),
        ("storage", "objects", "url"),
    ]
    return db


class TestRewriteStorageUrls:

    def test_prefix_replaced_everywhere_it_leads(self, tmp_path):
        db = make_target_db()
        sync, _, _ = make_sync(tmp_path, target_db=db)

        updated = run(sync.rewrite_storage_urls())

        assert updated == 2
        avatar = db.tables["auth.users"][0]["raw_user_meta_data"]
        assert avatar["avatar_url"].startswith(f"{TARGET_API}/storage/v1/object/public/")
        profiles = db.tables["public.profiles"]
        assert profiles[0]["avatar_url"] == (
            f"{TARGET_API}/storage/v1/object/public/avatars/u1/face.png")

    def test_embedded_occurrences_untouched(self, tmp_path):
        db = make_target_db()
        sync, _, _ = make_sync(tmp_path, target_db=db)

        run(sync.rewrite_storage_urls())

        assert db.tables["public.profiles"][1]["avatar_url"] == (
            f"https://mirror.example.net/?u={SOURCE_API}/storage/x")
        assert json.loads(db.tables["auth.users"][1]["raw_user_meta_data"]) == {
            "avatar_url": "https://cdn.example.org/u2.png"}

    def test_unsafe_identifiers_never_reach_sql(self, tmp_path):
        db = make_target_db()
        sync, _, _ = make_sync(tmp_path, target_db=db)

        run(sync.rewrite_storage_urls())

        assert not any('bad"' in sql for _, sql in db.executed)

    def test_platform_schemas_not_scanned(self, tmp_path):
        db = make_target_db()
        sync, _, _ = make_sync(tmp_path, target_db=db)

        run(sync.rewrite_storage_urls())

        assert any("information_schema.columns" in sql for _, sql in db.executed)
        assert sync.rewrite_schemas == ["public"]
        assert not any('"storage"."objects"' in sql for _, sql in db.executed)

    def test_identical_endpoints_skip_rewrite(self, tmp_path):
        db = make_target_db()
        config = make_config(tmp_path, target={
            "db_url": "postgresql://u:p@other/db", "api_url": SOURCE_API + "/",
            "service_role_key": "a.b.c"})
        sync = StorageSync(config, FakeStorageClient(), FakeStorageClient(), FakePool(db))

        assert run(sync.rewrite_storage_urls()) == 0
        assert db.executed == []
