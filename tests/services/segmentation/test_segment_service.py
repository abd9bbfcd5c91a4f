import uuid

import pytest

from pushlab.core.exceptions import NotFoundError, StateError, ValidationError
from pushlab.models.schemas import CreateSegmentRequest, UpdateSegmentRequest
from pushlab.models.segment import Segment
from pushlab.services.segmentation.service import SegmentationService, build_rule_metadata


def segment_request(name="madrid", rules=None, **kwargs):
    return CreateSegmentRequest(
        name=name,
        description=f"{name} users",
        rules=rules or [{"type": "demographic", "field": "city", "operator": "equals", "value": "Madrid"}],
        **kwargs,
    )


@pytest.fixture
def service(db, directory):
    return SegmentationService(db, directory)


class TestSegmentRegistry:
    @pytest.mark.asyncio
    async def test_create_refreshes_size(self, service):
        segment = await service.create_segment(segment_request())

        assert segment.estimated_size == 2
        assert segment.last_size_update is not None
        assert segment.rules == [
            {"type": "demographic", "field": "city", "operator": "equals", "value": "Madrid"}
        ]

    @pytest.mark.asyncio
    async def test_inactive_segment_is_not_sized(self, service):
        segment = await service.create_segment(segment_request(active=False))

        assert segment.estimated_size == 0
        assert segment.last_size_update is None

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, service):
        await service.create_segment(segment_request())

        with pytest.raises(ValidationError) as exc:
            await service.create_segment(segment_request())
        assert exc.value.field == "name"

    @pytest.mark.asyncio
    async def test_malformed_rule_is_not_stored(self, service):
        rules = [
            {"type": "demographic", "field": "age", "operator": "greaterThan", "value": 18},
            {"type": "demographic", "field": "age", "operator": "between", "value": [50]},
        ]
        with pytest.raises(ValidationError) as exc:
            await service.create_segment(segment_request(rules=rules))

        assert exc.value.rule_index == 1
        assert await service.list_segments(active=None) == []

    @pytest.mark.asyncio
    async def test_get_by_name_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.get_segment_by_name("missing")

    @pytest.mark.asyncio
    async def test_list_defaults_to_active(self, service):
        await service.create_segment(segment_request("active-one", tags=["vip"]))
        await service.create_segment(segment_request("dormant", active=False))

        active = await service.list_segments()
        everything = await service.list_segments(active=None)
        tagged = await service.list_segments(tag="vip")

        assert [s.name for s in active] == ["active-one"]
        assert {s.name for s in everything} == {"active-one", "dormant"}
        assert [s.name for s in tagged] == ["active-one"]

    @pytest.mark.asyncio
    async def test_update_rules_refreshes_size(self, service):
        segment = await service.create_segment(segment_request())

        updated = await service.update_segment(
            segment.id,
            UpdateSegmentRequest(
                rules=[{"type": "demographic", "field": "age", "operator": "exists"}]
            ),
        )

        assert updated.estimated_size == 3
        assert updated.rules[0]["operator"] == "exists"

    @pytest.mark.asyncio
    async def test_update_description_keeps_size(self, service):
        segment = await service.create_segment(segment_request())

        updated = await service.update_segment(
            segment.id, UpdateSegmentRequest(description="Madrid based customers")
        )

        assert updated.description == "Madrid based customers"
        assert updated.estimated_size == 2

    @pytest.mark.asyncio
    async def test_rename_unreferenced_segment(self, service):
        segment = await service.create_segment(segment_request())

        updated = await service.update_segment(segment.id, UpdateSegmentRequest(name="capital"))

        assert updated.name == "capital"
        assert (await service.get_segment_by_name("capital")).id == segment.id

    @pytest.mark.asyncio
    async def test_rename_onto_existing_name_rejected(self, service):
        segment = await service.create_segment(segment_request())
        await service.create_segment(segment_request("capital"))

        with pytest.raises(ValidationError) as exc:
            await service.update_segment(segment.id, UpdateSegmentRequest(name="capital"))
        assert exc.value.field == "name"

    @pytest.mark.asyncio
    async def test_delete(self, service):
        segment = await service.create_segment(segment_request())

        await service.delete_segment(segment.id)

        with pytest.raises(NotFoundError):
            await service.get_segment(segment.id)


class TestMembership:
    @pytest.mark.asyncio
    async def test_resolve_members(self, service):
        await service.create_segment(segment_request())

        members = await service.resolve_members("madrid")

        assert [u.id for u in members] == ["u1", "u2"]

    @pytest.mark.asyncio
    async def test_inactive_segment_cannot_be_resolved(self, service):
        await service.create_segment(segment_request(active=False))

        with pytest.raises(StateError):
            await service.resolve_members("madrid")

    @pytest.mark.asyncio
    async def test_device_handles_are_deduplicated(self, service):
        await service.create_segment(
            segment_request(
                "with-age",
                rules=[{"type": "demographic", "field": "age", "operator": "exists"}],
            )
        )

        handles = await service.collect_device_handles("with-age")

        assert handles == ["h1", "h2", "h3", "h4"]

    @pytest.mark.asyncio
    async def test_new_directory_users_picked_up_on_refresh(self, service, directory):
        segment = await service.create_segment(segment_request())
        directory.users[3].attributes["addresses"] = [{"city": "Madrid"}]

        size = await service.refresh_size(segment)

        assert size == 3


class TestBatchJobs:
    @pytest.mark.asyncio
    async def test_run_segmentation_collects_failures(self, service, db):
        await service.create_segment(segment_request())
        broken = Segment(
            id=str(uuid.uuid4()),
            name="broken",
            description="stored before rule validation",
            rules=[{"type": "demographic", "field": "age", "operator": "daysAgo", "value": 3}],
            tags=[],
            active=True,
            estimated_size=0,
        )
        db.add(broken)
        await db.commit()

        result = await service.run_segmentation()

        assert result.processed_segments == 1
        assert [entry.name for entry in result.updated_segments] == ["madrid"]
        assert [error.segment_name for error in result.errors] == ["broken"]
        assert "Rule 0" in result.errors[0].error

    @pytest.mark.asyncio
    async def test_refresh_user_analytics(self, service, directory):
        result = await service.refresh_user_analytics()

        assert result.updated_users == 4
        assert directory.users[0].attributes["daysInactive"] == 2
        assert directory.users[0].attributes["analytics"]["daysSinceLastOrder"] == 5
        assert "daysInactive" not in directory.users[3].attributes


class TestRuleMetadata:
    def test_lists_every_rule_type_and_operator(self):
        metadata = build_rule_metadata()

        assert {t.id for t in metadata.rule_types} == {
            "demographic",
            "behavior",
            "preference",
            "purchase",
            "engagement",
            "location",
            "date",
            "device",
        }
        assert len(metadata.operators) == 13

    def test_exists_requires_no_value(self):
        operators = {op.id: op for op in build_rule_metadata().operators}

        assert operators["exists"].requires_value is False
        assert operators["daysAgo"].applicable_types == ["date"]
