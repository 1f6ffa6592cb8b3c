import asyncio
import datetime
import unittest
from dataclasses import replace

from review_core.common.config import DatabaseSettings
from review_core.common.exceptions import ConflictError
from review_core.database import create_engine, create_session_factory, initialize_database
from review_core.domain.model import (
    DifficultyAdjustment,
    ForgettingCurveProfile,
    ItemDifficulty,
    ReviewSchedule,
    ReviewStatus,
)
from review_core.domain.sql_repository import SQLReviewStore

NOW = datetime.datetime(2024, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)


class TestSQLReviewStore(unittest.TestCase):
    """Test the SQL review store on in-memory SQLite."""

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        self.engine = create_engine(DatabaseSettings(backend="sql", url="sqlite+aiosqlite:///:memory:"))
        self.run_async(initialize_database(self.engine))
        self.store = SQLReviewStore(create_session_factory(self.engine), self.engine)

    def tearDown(self):
        self.run_async(self.store.close())
        self.loop.close()

    def run_async(self, coro):
        return self.loop.run_until_complete(coro)

    def schedule(self, user_id="u1", item_id="item-1", level=1, due=NOW, previous=None):
        return ReviewSchedule.create(user_id, item_id, level, due, previous_schedule_id=previous, created_at=NOW)

    def test_create_and_get_schedule(self):
        created = self.run_async(self.store.create_schedule(self.schedule()))

        loaded = self.run_async(self.store.get_schedule(created.id))
        self.assertEqual(loaded, created)
        self.assertEqual(loaded.scheduled_at.tzinfo, datetime.timezone.utc)
        self.assertEqual(self.run_async(self.store.get_pending_schedule("u1", "item-1")), created)
        self.assertIsNone(self.run_async(self.store.get_schedule("missing")))

    def test_one_pending_schedule_per_pair(self):
        self.run_async(self.store.create_schedule(self.schedule()))
        with self.assertRaises(ConflictError):
            self.run_async(self.store.create_schedule(self.schedule()))

        self.run_async(self.store.create_schedule(self.schedule(item_id="item-2")))
        self.assertEqual(len(self.run_async(self.store.list_pending_schedules("u1"))), 2)

    def test_advance_schedule(self):
        first = self.run_async(self.store.create_schedule(self.schedule(level=3)))
        closed = replace(first, status=ReviewStatus.COMPLETED, is_success=True, completed_at=NOW)
        successor = self.schedule(level=4, due=NOW + datetime.timedelta(days=1), previous=first.id)

        self.run_async(self.store.advance_schedule(closed, successor))

        self.assertEqual(self.run_async(self.store.get_schedule(first.id)).status, ReviewStatus.COMPLETED)
        pending = self.run_async(self.store.get_pending_schedule("u1", "item-1"))
        self.assertEqual(pending.id, successor.id)
        self.assertEqual(pending.previous_schedule_id, first.id)

    def test_advance_closed_schedule_conflicts(self):
        first = self.run_async(self.store.create_schedule(self.schedule()))
        closed = replace(first, status=ReviewStatus.COMPLETED, completed_at=NOW)
        self.run_async(self.store.advance_schedule(closed, self.schedule(level=2, previous=first.id)))

        with self.assertRaises(ConflictError):
            self.run_async(self.store.advance_schedule(closed, self.schedule(level=2, previous=first.id)))
        self.assertEqual(len(self.run_async(self.store.list_pending_schedules("u1"))), 1)

    def test_close_schedule(self):
        first = self.run_async(self.store.create_schedule(self.schedule()))
        self.run_async(self.store.close_schedule(replace(first, status=ReviewStatus.SKIPPED, completed_at=NOW)))

        self.assertIsNone(self.run_async(self.store.get_pending_schedule("u1", "item-1")))
        self.run_async(self.store.create_schedule(self.schedule()))

    def test_mark_overdue_and_due_filter(self):
        early = self.run_async(self.store.create_schedule(self.schedule(due=NOW - datetime.timedelta(hours=2))))
        self.run_async(self.store.create_schedule(self.schedule(item_id="item-2", due=NOW + datetime.timedelta(hours=2))))

        self.assertEqual(self.run_async(self.store.mark_overdue(NOW)), 1)
        self.assertEqual(self.run_async(self.store.get_schedule(early.id)).status, ReviewStatus.OVERDUE)
        self.assertEqual(self.run_async(self.store.mark_overdue(NOW)), 0)

        due = self.run_async(self.store.list_pending_schedules("u1", due_before=NOW))
        self.assertEqual([s.id for s in due], [early.id])

    def test_due_window(self):
        for offset, item_id in enumerate(("item-1", "item-2", "item-3")):
            self.run_async(self.store.create_schedule(
                self.schedule(item_id=item_id, due=NOW + datetime.timedelta(hours=offset))
            ))

        window = self.run_async(self.store.list_pending_schedules(
            "u1", due_before=NOW + datetime.timedelta(hours=1), due_after=NOW
        ))
        self.assertEqual([s.item_id for s in window], ["item-1", "item-2"])
        later = self.run_async(self.store.list_pending_schedules("u1", due_after=NOW + datetime.timedelta(minutes=1)))
        self.assertEqual([s.item_id for s in later], ["item-2", "item-3"])

    def test_closed_schedule_keeps_review_figures(self):
        first = self.run_async(self.store.create_schedule(
            ReviewSchedule.create("u1", "item-1", 1, NOW, created_at=NOW, difficulty_score=6.2)
        ))
        closed = replace(
            first, status=ReviewStatus.COMPLETED, is_success=True, retention_rate=0.58, completed_at=NOW
        )
        self.run_async(self.store.advance_schedule(closed, self.schedule(level=2, previous=first.id)))

        loaded = self.run_async(self.store.get_schedule(first.id))
        self.assertEqual(loaded.difficulty_score_at_review, 6.2)
        self.assertEqual(loaded.retention_rate, 0.58)

    def test_list_recent_users(self):
        self.run_async(self.store.create_schedule(self.schedule(user_id="u1")))
        self.run_async(self.store.create_schedule(self.schedule(user_id="u2")))

        since = NOW - datetime.timedelta(days=7)
        self.assertEqual(self.run_async(self.store.list_recent_users("item-1", since)), ["u1", "u2"])
        later = NOW + datetime.timedelta(days=1)
        self.assertEqual(self.run_async(self.store.list_recent_users("item-1", later)), [])

    def test_profiles(self):
        self.assertIsNone(self.run_async(self.store.get_profile("u1")))

        profile = ForgettingCurveProfile(user_id="u1", difficulty_adjustments={"algebra": -0.3}, updated_at=NOW)
        self.run_async(self.store.save_profile(profile))
        profile.success_count = 4
        self.run_async(self.store.save_profile(profile))

        loaded = self.run_async(self.store.get_profile("u1"))
        self.assertEqual(loaded.success_count, 4)
        self.assertEqual(loaded.difficulty_adjustments, {"algebra": -0.3})

    def test_items_and_adjustments(self):
        self.run_async(self.store.save_item(ItemDifficulty(item_id="item-1", baseline_difficulty=6.5, subject="algebra", updated_at=NOW)))
        item = self.run_async(self.store.get_item("item-1"))
        self.assertEqual(item.baseline_difficulty, 6.5)
        self.assertEqual(item.subject, "algebra")

        for offset, new in enumerate((7.0, 7.5)):
            self.run_async(self.store.record_adjustment(DifficultyAdjustment(
                item_id="item-1", previous_difficulty=new - 0.5, new_difficulty=new,
                reason="test", urgency="high", feedback_count=10,
                created_at=NOW + datetime.timedelta(seconds=offset)
            )))
        history = self.run_async(self.store.list_adjustments("item-1"))
        self.assertEqual([a.new_difficulty for a in history], [7.0, 7.5])

    def test_list_items(self):
        catalog = [("a", 3.0, "algebra"), ("b", 5.5, "algebra"), ("c", 6.0, None), ("d", 8.0, "algebra")]
        for item_id, difficulty, subject in catalog:
            self.run_async(self.store.save_item(
                ItemDifficulty(item_id=item_id, baseline_difficulty=difficulty, subject=subject, updated_at=NOW)
            ))

        band = self.run_async(self.store.list_items(min_difficulty=4.0, max_difficulty=6.0))
        self.assertEqual([i.item_id for i in band], ["b", "c"])
        algebra = self.run_async(self.store.list_items(subject="algebra", limit=2))
        self.assertEqual([i.item_id for i in algebra], ["a", "b"])
        self.assertEqual(band[1].updated_at.tzinfo, datetime.timezone.utc)


if __name__ == "__main__":
    unittest.main()
