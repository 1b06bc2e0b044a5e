"""
Tests for reminder timeline validation and the per-tenant config store.
"""

import pytest

from src.reminders.models import ReminderInterval, ReminderTimelineConfig
from src.reminders.store import InMemoryTimelineConfigStore
from src.reminders.timeline import (
    MAX_INTERVALS,
    TimelineValidationError,
    default_timeline,
    validate_config,
    validate_intervals,
)


class TestValidateIntervals:
    def test_sorted_longest_first(self):
        result = validate_intervals([1, 24, 0.5, 2])
        assert [i.hours for i in result] == [24, 2, 1, 0.5]

    def test_near_duplicates_collapse_silently(self):
        result = validate_intervals([1, 1.000001, 2])
        assert [i.hours for i in result] == [2, 1]

    def test_first_near_duplicate_wins(self):
        result = validate_intervals([
            {"hours": 1, "label": "one hour"},
            {"hours": 1.001, "label": "also one hour"},
        ])
        assert len(result) == 1
        assert result[0].label == "one hour"

    def test_too_short_interval_rejected(self):
        with pytest.raises(TimelineValidationError):
            validate_intervals([0.05, 1, 1.000001])

    def test_lower_bound_is_exclusive(self):
        with pytest.raises(TimelineValidationError):
            validate_intervals([0.1])
        assert validate_intervals([0.11])[0].hours == 0.11

    def test_upper_bound_is_inclusive(self):
        assert validate_intervals([168])[0].hours == 168
        with pytest.raises(TimelineValidationError):
            validate_intervals([168.5])

    def test_non_finite_hours_rejected(self):
        for bad in (float("nan"), float("inf"), float("-inf")):
            with pytest.raises(TimelineValidationError):
                validate_intervals([bad, 1])

    def test_range_checked_after_rounding(self):
        # 0.104 would be stored as 0.1, which is out of range
        with pytest.raises(TimelineValidationError):
            validate_intervals([0.104])

    def test_normalized_output_revalidates(self):
        normalized = validate_intervals([0.115, 1.004, 167.999, 24])
        assert validate_intervals(normalized) == normalized

    def test_more_than_ten_rejected(self):
        with pytest.raises(TimelineValidationError):
            validate_intervals([h + 1 for h in range(MAX_INTERVALS + 1)])

    def test_ten_entries_accepted(self):
        assert len(validate_intervals([h + 1 for h in range(MAX_INTERVALS)])) == MAX_INTERVALS

    def test_raw_count_checked_before_dedup(self):
        # 11 raw entries that would collapse to 1 are still too many
        with pytest.raises(TimelineValidationError):
            validate_intervals([1] * 11)

    def test_empty_rejected_while_enabled(self):
        with pytest.raises(TimelineValidationError) as exc:
            validate_intervals([], enabled=True)
        assert exc.value.field == "intervals"

    def test_empty_allowed_while_disabled(self):
        assert validate_intervals([], enabled=False) == []

    def test_labels_filled_in(self):
        result = validate_intervals([0.5, 1, 3])
        assert [i.label for i in result] == ["3 hours", "1 hour", "30 minutes"]

    def test_accepts_interval_models(self):
        result = validate_intervals([ReminderInterval(hours=2, label="two hours")])
        assert result[0].label == "two hours"


class TestIntervalModel:
    def test_keys(self):
        assert ReminderInterval(hours=24).key == "24h"
        assert ReminderInterval(hours=0.5).key == "0.5h"
        assert ReminderInterval(hours=1.0).key == "1h"

    def test_key_uses_rounded_hours(self):
        assert ReminderInterval(hours=1.004).key == ReminderInterval(hours=1).key

    def test_disabled_config_has_no_active_intervals(self):
        config = ReminderTimelineConfig(tenant_id="acme", enabled=False, intervals=[{"hours": 1}])
        assert config.active_intervals() == []
        assert config.max_hours() == 1


class TestDefaultTimeline:
    def test_default_values(self):
        config = default_timeline("acme")
        assert config.enabled is True
        assert [i.hours for i in config.intervals] == [24, 2, 1, 0.5]

    def test_default_is_valid(self):
        config = default_timeline("acme")
        assert validate_config(config).intervals == config.intervals


class TestTimelineConfigStore:
    def setup_method(self):
        self.store = InMemoryTimelineConfigStore()

    @pytest.mark.asyncio
    async def test_default_created_on_first_read(self):
        config = await self.store.get("acme")
        assert [i.key for i in config.intervals] == ["24h", "2h", "1h", "0.5h"]

    @pytest.mark.asyncio
    async def test_put_normalizes(self):
        stored = await self.store.put("acme", ReminderTimelineConfig(
            tenant_id="ignored", intervals=[{"hours": 1}, {"hours": 48}],
        ))
        assert stored.tenant_id == "acme"
        assert [i.hours for i in stored.intervals] == [48, 1]
        assert (await self.store.get("acme")).intervals == stored.intervals

    @pytest.mark.asyncio
    async def test_invalid_put_leaves_previous_config(self):
        await self.store.put("acme", ReminderTimelineConfig(tenant_id="acme", intervals=[{"hours": 3}]))
        with pytest.raises(TimelineValidationError):
            await self.store.put("acme", ReminderTimelineConfig(tenant_id="acme", intervals=[{"hours": 500}]))
        assert [i.hours for i in (await self.store.get("acme")).intervals] == [3]

    @pytest.mark.asyncio
    async def test_reset_keeps_notification_email(self):
        await self.store.put("acme", ReminderTimelineConfig(
            tenant_id="acme", intervals=[{"hours": 3}], notification_email="sales@acme.test",
        ))
        reset = await self.store.reset_to_default("acme")
        assert [i.hours for i in reset.intervals] == [24, 2, 1, 0.5]
        assert reset.notification_email == "sales@acme.test"

    @pytest.mark.asyncio
    async def test_returned_config_is_a_copy(self):
        config = await self.store.get("acme")
        config.intervals.clear()
        assert len((await self.store.get("acme")).intervals) == 4
