from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from app.db.models.profile import Profile
from app.workers import plan_sweeper


def test_sweep_once_expires_lapsed_plans(db, make_profile):
    lapsed = make_profile(
        "lapsed",
        plan="pro",
        next_plan="plus",
        plan_expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
    )
    lapsed_id = lapsed.id
    make_profile("current", plan="pro")

    with patch.object(plan_sweeper, "get_db", lambda: iter([db])):
        assert plan_sweeper.sweep_once(batch_size=10) == 1

    # The worker closes its session; reload through a fresh identity map
    refreshed = db.get(Profile, lapsed_id)
    assert refreshed.plan == "plus"
    assert refreshed.plan_source == "system"


def test_main_once_exits_when_nothing_lapsed():
    with patch.object(plan_sweeper, "sweep_once", return_value=0) as sweep:
        plan_sweeper.main(once=True)
    sweep.assert_called_once_with()
