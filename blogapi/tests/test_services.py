import threading
import unittest
from unittest.mock import patch

from blogapi.config import Settings
from blogapi.db import InMemoryDbClient, PostFilter, PostRecord
from blogapi.errors import ConflictError, Forbidden, NotFound, StoreError, ValidationError
from blogapi.images import ImageUpload, post_image_policy, profile_image_policy
from blogapi.security import verify_password
from blogapi.services import PostDraft, PostService, UserDraft, UserService
from blogapi.storage import InMemoryAssetStore
from blogapi.tests.support import png_upload, truncated_jpeg


class ServiceTestCase(unittest.TestCase):
    def setUp(self):
        settings = Settings()
        self.db = InMemoryDbClient()
        self.store = InMemoryAssetStore()
        self.posts = PostService(self.db, self.store, post_image_policy(settings))
        self.users = UserService(self.db, self.store, profile_image_policy(settings))

    def make_post(self, username="alice", upload=None, categories=None):
        draft = PostDraft(
            username=username, title="T", desc="D", categories=categories or []
        )
        return self.posts.create(draft, upload)


class PostCreateTests(ServiceTestCase):
    def test_create_without_file_leaves_media_unset(self):
        post = self.make_post()
        self.assertIsNone(post.photo)
        self.assertIsNone(post.secure_url)
        self.assertIsNone(post.photo_id)

        fetched = self.posts.get(post.id)
        self.assertEqual(fetched.username, "alice")
        self.assertEqual(fetched.title, "T")
        self.assertEqual(fetched.desc, "D")
        self.assertIsNone(fetched.photo)
        self.assertEqual(self.store.objects, {})

    def test_create_with_file_uses_store_url(self):
        post = self.make_post(upload=png_upload())
        self.assertEqual(len(self.store.objects), 1)
        asset_id = next(iter(self.store.objects))
        self.assertEqual(post.photo_id, asset_id)
        self.assertTrue(asset_id.startswith("blog_images/blog_image_"))
        self.assertEqual(post.photo, f"{self.store.base_url}/{asset_id}.png")
        self.assertTrue(post.secure_url.startswith("https://"))
        self.assertEqual(self.store.transforms[asset_id].crop, "limit")
        self.assertEqual(self.posts.get(post.id).photo, post.photo)

    def test_create_rejects_non_image_before_upload(self):
        upload = ImageUpload(filename="notes.txt", content_type="text/plain", data=b"hi")
        with self.assertRaises(ValidationError):
            self.make_post(upload=upload)
        self.assertEqual(self.store.objects, {})
        self.assertEqual(self.db.posts, {})

    def test_upload_failure_means_no_record(self):
        with patch.object(self.store, "store", side_effect=StoreError("rejected")):
            with self.assertRaises(StoreError):
                self.make_post(upload=png_upload())
        self.assertEqual(self.db.posts, {})

    def test_failed_persist_orphans_uploaded_asset(self):
        with patch.object(self.db, "create_post", side_effect=RuntimeError("db down")):
            with self.assertLogs("blogapi.services", level="ERROR") as logs:
                with self.assertRaises(RuntimeError):
                    self.make_post(upload=png_upload())
        # No compensating delete: the asset stays behind.
        self.assertEqual(len(self.store.objects), 1)
        self.assertEqual(self.store.deleted, [])
        self.assertIn("orphaned", logs.output[0])


class PostUpdateTests(ServiceTestCase):
    def test_owner_update_changes_only_patched_fields(self):
        post = self.make_post(upload=png_upload(), categories=["news"])
        updated = self.posts.update(post.id, "alice", {"title": "New", "desc": None})
        self.assertEqual(updated.title, "New")
        self.assertEqual(updated.desc, "D")
        self.assertEqual(updated.username, "alice")
        self.assertEqual(updated.photo, post.photo)
        self.assertEqual(updated.categories, ["news"])
        self.assertEqual(updated.created_at, post.created_at)

    def test_non_owner_update_is_forbidden_and_changes_nothing(self):
        post = self.make_post(upload=png_upload())
        with self.assertRaises(Forbidden):
            self.posts.update(post.id, "mallory", {"title": "Hacked"}, png_upload())
        fetched = self.posts.get(post.id)
        self.assertEqual(fetched.title, "T")
        self.assertEqual(fetched.photo, post.photo)
        self.assertEqual(len(self.store.objects), 1)
        self.assertEqual(self.store.deleted, [])

    def test_update_missing_post(self):
        with self.assertRaises(NotFound):
            self.posts.update("nope", "alice", {"title": "x"})

    def test_update_rejects_unknown_fields(self):
        post = self.make_post()
        with self.assertRaises(ValidationError):
            self.posts.update(post.id, "alice", {"username": "bob"})

    def test_replacing_media_deletes_old_asset(self):
        post = self.make_post(upload=png_upload())
        updated = self.posts.update(post.id, "alice", {}, png_upload("new.png"))
        self.assertNotEqual(updated.photo, post.photo)
        self.assertEqual(self.store.deleted, [post.photo_id])
        self.assertEqual(list(self.store.objects), [updated.photo_id])
        self.assertEqual(self.posts.get(post.id).photo, updated.photo)

    def test_cleanup_failure_does_not_fail_update(self):
        post = self.make_post(upload=png_upload())
        with patch.object(self.store, "delete", side_effect=StoreError("boom")):
            with self.assertLogs("blogapi.services", level="WARNING") as logs:
                updated = self.posts.update(post.id, "alice", {}, png_upload("new.png"))
        self.assertIn(post.photo_id, logs.output[0])
        self.assertEqual(self.posts.get(post.id).photo, updated.photo)
        # The stale asset is left behind.
        self.assertIn(post.photo_id, self.store.objects)

    def test_invalid_replacement_keeps_old_asset(self):
        post = self.make_post(upload=png_upload())
        bad = ImageUpload(filename="x.bmp", content_type="image/bmp", data=b"BM....")
        with self.assertRaises(ValidationError):
            self.posts.update(post.id, "alice", {}, bad)
        self.assertIn(post.photo_id, self.store.objects)
        self.assertEqual(self.posts.get(post.id).photo, post.photo)

    def test_truncated_replacement_is_rejected_before_cleanup(self):
        post = self.make_post(upload=png_upload())
        bad = ImageUpload(filename="cut.jpg", content_type="image/jpeg", data=truncated_jpeg())
        with patch.object(self.store, "store") as store:
            with self.assertRaises(ValidationError):
                self.posts.update(post.id, "alice", {"title": "New"}, bad)
        store.assert_not_called()
        self.assertEqual(self.store.deleted, [])
        fetched = self.posts.get(post.id)
        self.assertEqual(fetched.photo, post.photo)
        self.assertEqual(fetched.title, "T")

    def test_write_failure_after_cleanup_points_record_at_deleted_asset(self):
        # Known inconsistency window: the old asset is gone, the record still
        # references it, and the freshly uploaded asset is orphaned.
        post = self.make_post(upload=png_upload())
        with patch.object(self.db, "update_post", side_effect=RuntimeError("db down")):
            with self.assertRaises(RuntimeError):
                self.posts.update(post.id, "alice", {"title": "New"}, png_upload("new.png"))
        fetched = self.posts.get(post.id)
        self.assertEqual(fetched.photo, post.photo)
        self.assertEqual(fetched.title, "T")
        self.assertNotIn(post.photo_id, self.store.objects)
        self.assertEqual(len(self.store.objects), 1)

    def test_concurrent_updates_last_write_wins(self):
        post = self.make_post()
        upload_started = threading.Event()
        release_upload = threading.Event()
        original_store = self.store.store

        def slow_store(*args, **kwargs):
            upload_started.set()
            release_upload.wait(5)
            return original_store(*args, **kwargs)

        errors = []

        def first_update():
            try:
                self.posts.update(post.id, "alice", {"title": "first"}, png_upload())
            except Exception as exc:
                errors.append(exc)

        with patch.object(self.store, "store", side_effect=slow_store):
            worker = threading.Thread(target=first_update)
            worker.start()
            self.assertTrue(upload_started.wait(5))
            self.posts.update(post.id, "alice", {"title": "second"})
            self.assertEqual(self.posts.get(post.id).title, "second")
            release_upload.set()
            worker.join(5)

        self.assertEqual(errors, [])
        self.assertEqual(self.posts.get(post.id).title, "first")


class PostDeleteAndListTests(ServiceTestCase):
    def test_delete_removes_record_and_asset(self):
        post = self.make_post(upload=png_upload())
        result = self.posts.delete(post.id, "alice")
        self.assertEqual(result.id, post.id)
        self.assertEqual(result.kind, "post")
        self.assertEqual(self.store.deleted, [post.photo_id])
        with self.assertRaises(NotFound):
            self.posts.get(post.id)

    def test_delete_missing_is_not_found(self):
        post = self.make_post()
        self.posts.delete(post.id, "alice")
        with self.assertRaises(NotFound):
            self.posts.delete(post.id, "alice")

    def test_delete_by_non_owner_is_forbidden(self):
        post = self.make_post(upload=png_upload())
        with self.assertRaises(Forbidden):
            self.posts.delete(post.id, "bob")
        self.assertIsNotNone(self.posts.get(post.id))
        self.assertIn(post.photo_id, self.store.objects)

    def test_delete_survives_asset_cleanup_failure(self):
        post = self.make_post(upload=png_upload())
        with patch.object(self.store, "delete", side_effect=StoreError("boom")):
            with self.assertLogs("blogapi.services", level="WARNING"):
                self.posts.delete(post.id, "alice")
        with self.assertRaises(NotFound):
            self.posts.get(post.id)

    def test_legacy_record_asset_id_recovered_from_url(self):
        self.store.objects["legacy_pic"] = b"old"
        legacy = PostRecord(
            id="legacy",
            username="alice",
            title="Old",
            desc="",
            photo="http://assets.example.test/legacy_pic.jpg",
        )
        self.db.create_post(legacy)
        with self.assertLogs("blogapi.services", level="WARNING") as logs:
            self.posts.delete("legacy", "alice")
        self.assertEqual(self.store.deleted, ["legacy_pic"])
        self.assertTrue(any("recovered from" in line for line in logs.output))

    def test_list_filters(self):
        a = self.make_post("alice", categories=["music", "art"])
        b = self.make_post("bob", categories=["music"])
        c = self.make_post("alice")

        by_alice = {p.id for p in self.posts.list(PostFilter(username="alice"))}
        self.assertEqual(by_alice, {a.id, c.id})
        music = {p.id for p in self.posts.list(PostFilter(category="music"))}
        self.assertEqual(music, {a.id, b.id})
        self.assertEqual(len(self.posts.list()), 3)
        self.assertEqual(self.posts.list(PostFilter(username="Alice")), [])


class UserServiceTests(ServiceTestCase):
    def make_user(self, username="alice", email="alice@example.com", upload=None):
        return self.users.create(
            UserDraft(username=username, email=email, password="s3cret-pass"), upload
        )

    def test_create_hashes_password_and_strips_it(self):
        user = self.make_user(upload=png_upload("me.png"))
        self.assertIsNone(user.password_hash)
        self.assertIsNotNone(user.profile_pic)
        self.assertTrue(user.profile_pic_id.startswith("profile_photos/profile_"))
        self.assertEqual(self.store.transforms[user.profile_pic_id].crop, "fill")

        stored = self.db.get_user(user.id)
        self.assertNotEqual(stored.password_hash, "s3cret-pass")
        self.assertTrue(verify_password("s3cret-pass", stored.password_hash))
        self.assertIsNone(self.users.get(user.id).password_hash)

    def test_duplicate_user_conflicts_and_orphans_upload(self):
        self.make_user()
        with self.assertLogs("blogapi.services", level="ERROR"):
            with self.assertRaises(ConflictError):
                self.make_user(email="other@example.com", upload=png_upload("me.png"))
        self.assertEqual(len(self.store.objects), 1)
        with self.assertRaises(ConflictError):
            self.make_user(username="other")

    def test_other_identity_cannot_update(self):
        user = self.make_user()
        other = self.make_user("bob", "bob@example.com")
        with self.assertRaises(Forbidden):
            self.users.update(user.id, other.id, {"email": "x@example.com"})
        with self.assertRaises(Forbidden):
            self.users.update(user.id, None, {"email": "x@example.com"})
        self.assertEqual(self.users.get(user.id).email, "alice@example.com")

    def test_update_rehashes_password_and_replaces_picture(self):
        user = self.make_user(upload=png_upload("me.png"))
        updated = self.users.update(
            user.id, user.id, {"password": "n3w-pass"}, png_upload("me2.png")
        )
        self.assertIsNone(updated.password_hash)
        self.assertNotEqual(updated.profile_pic, user.profile_pic)
        self.assertEqual(self.store.deleted, [user.profile_pic_id])
        stored = self.db.get_user(user.id)
        self.assertTrue(verify_password("n3w-pass", stored.password_hash))
        self.assertEqual(stored.username, "alice")

    def test_rename_does_not_touch_existing_posts(self):
        user = self.make_user()
        post = self.make_post("alice")
        self.users.update(user.id, user.id, {"username": "alicia"})
        self.assertEqual(self.posts.get(post.id).username, "alice")

    def test_delete_cascades_posts_by_username(self):
        user = self.make_user(upload=png_upload("me.png"))
        self.make_post("alice")
        self.make_post("alice", categories=["x"])
        kept = self.make_post("bob")

        self.users.delete(user.id, user.id)

        self.assertEqual(self.posts.list(PostFilter(username="alice")), [])
        self.assertEqual([p.id for p in self.posts.list()], [kept.id])
        self.assertEqual(self.store.deleted, [user.profile_pic_id])
        with self.assertRaises(NotFound):
            self.users.get(user.id)

    def test_delete_missing_user(self):
        with self.assertRaises(NotFound):
            self.users.delete("ghost", "ghost")

    def test_cascade_is_not_atomic_with_user_removal(self):
        user = self.make_user()
        self.make_post("alice")
        with patch.object(self.db, "delete_user", side_effect=RuntimeError("db down")):
            with self.assertRaises(RuntimeError):
                self.users.delete(user.id, user.id)
        # Posts are gone but the account survived.
        self.assertEqual(self.posts.list(PostFilter(username="alice")), [])
        self.assertEqual(self.users.get(user.id).username, "alice")


if __name__ == "__main__":
    unittest.main()
