"""Tests for the planner: create / update / replace / orphan handling and ordering."""

import pytest

from provisio.engine.executor import Executor
from provisio.engine.planner import build_destroy_plan, build_plan, changed_attributes
from provisio.errors import CycleError, UnsupportedKindError
from provisio.models.plan import ActionType
from provisio.models.state import State


async def _apply(decls, provider, storage, settings, state=None):
    state = state if state is not None else await storage.load()
    plan = build_plan(decls, state, provider)
    result = await Executor(provider, storage, settings).apply(plan, state, decls)
    return result.state


class TestChangedAttributes:
    def test_reports_added_removed_and_modified(self):
        prior = {"a": 1, "b": 2, "gone": True}
        declared = {"a": 1, "b": 3, "new": "x"}
        assert changed_attributes(prior, declared) == ["b", "new", "gone"]

    def test_equal_configs(self):
        assert changed_attributes({"a": [1, 2]}, {"a": [1, 2]}) == []


class TestInitialPlan:
    def test_network_subnet_instance_created_in_dependency_order(self, load, nsi_yaml, provider):
        plan = build_plan(load(nsi_yaml), State(), provider)

        assert plan.keys() == ["create:network.n", "create:subnet.s", "create:instance.i"]
        assert plan.get("create:subnet.s").requires == ["create:network.n"]
        assert plan.get("create:instance.i").requires == ["create:subnet.s"]
        assert plan.summary() == {"add": 3, "change": 0, "destroy": 0}

    def test_cycle_yields_no_plan(self, load, provider):
        decls = load(
            """
            resources:
              - kind: network
                name: a
                attributes: {peer: "${network.b.id}"}
              - kind: network
                name: b
                attributes: {peer: "${network.a.id}"}
            """
        )
        with pytest.raises(CycleError):
            build_plan(decls, State(), provider)

    def test_unsupported_kind(self, load, provider):
        decls = load(
            """
            resources:
              - kind: bucket
                name: b
            """
        )
        with pytest.raises(UnsupportedKindError) as exc_info:
            build_plan(decls, State(), provider)
        assert exc_info.value.address == "bucket.b"

    def test_render_lists_actions_and_totals(self, load, nsi_yaml, provider):
        text = build_plan(load(nsi_yaml), State(), provider).render()
        assert "+ create network.n" in text
        assert "Plan: 3 to add, 0 to change, 0 to destroy." in text


class TestPlanAgainstState:
    @pytest.mark.asyncio
    async def test_second_plan_is_empty(self, load, nsi_yaml, provider, storage, settings):
        decls = load(nsi_yaml)
        state = await _apply(decls, provider, storage, settings)

        again = build_plan(decls, await storage.load(), provider)

        assert len(state.resources) == 3
        assert again.is_empty()
        assert "No changes" in again.render()

    @pytest.mark.asyncio
    async def test_mutable_change_is_an_update(self, load, nsi_yaml, provider, storage, settings):
        await _apply(load(nsi_yaml), provider, storage, settings)

        changed = load(nsi_yaml.replace("{Name: dev}", "{Name: renamed}"))
        plan = build_plan(changed, await storage.load(), provider)

        assert plan.keys() == ["update:subnet.s"]
        assert plan.actions[0].changed == ["tags"]
        assert plan.actions[0].replace is False

    @pytest.mark.asyncio
    async def test_immutable_change_replaces_resource_and_its_dependents(
        self, load, nsi_yaml, provider, storage, settings
    ):
        await _apply(load(nsi_yaml), provider, storage, settings)

        changed = load(nsi_yaml.replace("10.0.0.0/16", "10.1.0.0/16"))
        plan = build_plan(changed, await storage.load(), provider)

        assert plan.keys() == [
            "destroy:instance.i",
            "destroy:subnet.s",
            "destroy:network.n",
            "create:network.n",
            "create:subnet.s",
            "create:instance.i",
        ]
        assert all(action.replace for action in plan.actions)
        assert plan.get("create:network.n").requires == ["destroy:network.n"]
        assert plan.get("create:subnet.s").changed == ["network_id"]
        assert plan.get("destroy:network.n").requires == ["destroy:subnet.s"]
        assert "-/+ create network.n (cidr_block)" in plan.render()

    @pytest.mark.asyncio
    async def test_removed_declaration_is_destroyed(self, load, nsi_yaml, provider, storage, settings):
        await _apply(load(nsi_yaml), provider, storage, settings)

        trimmed = load(nsi_yaml.split("  - kind: instance")[0])
        plan = build_plan(trimmed, await storage.load(), provider)

        assert plan.keys() == ["destroy:instance.i"]
        assert plan.actions[0].type is ActionType.DESTROY
        assert plan.actions[0].replace is False

    @pytest.mark.asyncio
    async def test_destroy_plan_is_reverse_dependency_order(
        self, load, nsi_yaml, provider, storage, settings
    ):
        await _apply(load(nsi_yaml), provider, storage, settings)

        plan = build_destroy_plan(await storage.load())

        assert plan.mode == "destroy"
        assert plan.keys() == ["destroy:instance.i", "destroy:subnet.s", "destroy:network.n"]
        assert plan.get("destroy:subnet.s").requires == ["destroy:instance.i"]
        assert plan.get("destroy:instance.i").requires == []

    def test_destroy_plan_of_empty_state(self):
        assert build_destroy_plan(State()).is_empty()


SHARED_GROUPS_YAML = """
resources:
  - kind: network
    name: n
    attributes: {cidr_block: 10.0.0.0/16}
  - kind: security_group
    name: a
    attributes: {name: sg-a, network_id: "${network.n.id}"}
  - kind: security_group
    name: b
    attributes: {name: sg-b, network_id: "${network.n.id}"}
  - kind: instance
    name: i
    attributes:
      ami: ami-1
      security_group_ids: ["${security_group.a.id}", "${security_group.b.id}"]
"""

GROUP_A_REMOVED_YAML = """
resources:
  - kind: network
    name: n
    attributes: {cidr_block: 10.0.0.0/16}
  - kind: security_group
    name: b
    attributes: {name: sg-b, network_id: "${network.n.id}"}
  - kind: instance
    name: i
    attributes:
      ami: ami-1
      security_group_ids: ["${security_group.b.id}"]
"""

DEPENDS_ON_YAML = """
resources:
  - kind: network
    name: a
  - kind: network
    name: b
  - kind: network
    name: c
    depends_on: [network.a]
"""


class TestDependentsOfRemovedResources:
    @pytest.mark.asyncio
    async def test_replace_cascades_through_mutable_reference(
        self, load, provider, storage, settings
    ):
        await _apply(load(SHARED_GROUPS_YAML), provider, storage, settings)

        renamed = load(SHARED_GROUPS_YAML.replace("name: sg-a,", "name: sg-a2,"))
        plan = build_plan(renamed, await storage.load(), provider)

        assert plan.keys() == [
            "destroy:instance.i",
            "destroy:security_group.a",
            "create:security_group.a",
            "create:instance.i",
        ]
        instance = plan.get("create:instance.i")
        assert instance.replace is True
        assert instance.changed == ["security_group_ids"]
        assert instance.requires == ["destroy:instance.i", "create:security_group.a"]
        assert plan.get("destroy:security_group.a").requires == ["destroy:instance.i"]

    @pytest.mark.asyncio
    async def test_orphan_destroy_waits_for_dependent_update(
        self, load, provider, storage, settings
    ):
        await _apply(load(SHARED_GROUPS_YAML), provider, storage, settings)

        plan = build_plan(load(GROUP_A_REMOVED_YAML), await storage.load(), provider)

        assert plan.keys() == ["destroy:security_group.a", "update:instance.i"]
        assert plan.get("destroy:security_group.a").requires == ["update:instance.i"]
        assert plan.get("update:instance.i").requires == []


class TestDependencyChanges:
    @pytest.mark.asyncio
    async def test_changed_depends_on_is_an_update(self, load, provider, storage, settings):
        await _apply(load(DEPENDS_ON_YAML), provider, storage, settings)

        rewired = load(DEPENDS_ON_YAML.replace("[network.a]", "[network.b]"))
        plan = build_plan(rewired, await storage.load(), provider)

        assert plan.keys() == ["update:network.c"]
        assert plan.actions[0].changed == ["depends_on"]

    @pytest.mark.asyncio
    async def test_recorded_dependencies_follow_depends_on(
        self, load, provider, storage, settings
    ):
        await _apply(load(DEPENDS_ON_YAML), provider, storage, settings)
        rewired = load(DEPENDS_ON_YAML.replace("[network.a]", "[network.b]"))

        state = await _apply(rewired, provider, storage, settings)

        assert state.resources["network.c"].dependencies == ["network.b"]
        assert build_plan(rewired, state, provider).is_empty()
        destroy = build_destroy_plan(state)
        assert destroy.get("destroy:network.b").requires == ["destroy:network.c"]
        assert destroy.get("destroy:network.a").requires == []
