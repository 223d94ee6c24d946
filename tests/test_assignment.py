from collections import Counter

import pytest
from bson import ObjectId

from reconciliation import assignment
from reconciliation.assignment import assign_leads_to_agents
from reconciliation.errors import ValidationError
from reconciliation.phone_ownership import PhoneOwnershipResolver
from utils import config

ADMIN = "admin-1"


def _agent_doc(db, agent):
    return db[config.COLL_EMPLOYEES].find_one({"_id": agent["_id"]})


class TestStickiness:

    def test_owned_number_cannot_go_to_another_agent(self, db, make_agent, make_lead):
        asha = make_agent("Asha")
        bo = make_agent("Bo")
        make_lead("9000000001", assigned_to=asha["_id"])
        fresh = make_lead("9000000001")

        result = assign_leads_to_agents(db, [fresh["_id"]], [bo["_id"]], ADMIN)

        assert result["total_assigned"] == 0
        assert result["errors"] == [
            "Phone number 9000000001 is already assigned to Asha (EMP001). Cannot assign to different employee."
        ]
        assert db[config.COLL_LEADS].find_one({"_id": fresh["_id"]})["assigned_to"] is None
        assert _agent_doc(db, bo)["leads_assigned"] == 0

    def test_owned_number_goes_to_its_owner(self, db, make_agent, make_lead):
        asha = make_agent("Asha")
        make_lead("9000000001", assigned_to=asha["_id"])
        fresh = make_lead("9000000001")

        result = assign_leads_to_agents(db, [fresh["_id"]], [asha["_id"]], ADMIN)

        assert result["total_assigned"] == 1
        assert result["reassignments"] == 1
        assert result["new_assignments"] == 0
        assert PhoneOwnershipResolver(db).resolve("9000000001").agent_id == asha["_id"]

    def test_conflict_does_not_consume_the_turn(self, db, make_agent, make_lead):
        asha = make_agent("Asha")
        bo = make_agent("Bo")
        cy = make_agent("Cy")
        make_lead("9000000001", assigned_to=asha["_id"])
        owned = make_lead("9000000001")
        free = make_lead("9000000002")

        result = assign_leads_to_agents(db, [owned["_id"], free["_id"]], [bo["_id"], cy["_id"]], ADMIN)

        assert [a["employee_id"] for a in result["assignments"]] == [bo["_id"]]
        assert len(result["errors"]) == 1

    def test_number_sticks_within_one_batch(self, db, make_agent, make_lead):
        asha = make_agent("Asha")
        bo = make_agent("Bo")
        first = make_lead("9000000001")
        second = make_lead("90000 00001")

        result = assign_leads_to_agents(db, [first["_id"], second["_id"]], [asha["_id"], bo["_id"]], ADMIN)

        assert result["total_assigned"] == 1
        assert result["assignments"][0]["lead_id"] == first["_id"]
        assert "already assigned to Asha (EMP001)" in result["errors"][0]

    def test_batch_and_stored_owners_are_named_alike(self, db, make_agent, make_lead):
        asha = make_agent("Asha", employee_id=None)
        bo = make_agent("Bo")
        make_lead("9000000001", assigned_to=asha["_id"])
        fresh = make_lead("9000000002")
        dup = make_lead("9000000002")
        clash = make_lead("9000000001")

        result = assign_leads_to_agents(
            db, [fresh["_id"], dup["_id"], clash["_id"]], [asha["_id"], bo["_id"]], ADMIN
        )

        assert result["errors"] == [
            "Phone number 9000000002 is already assigned to Asha. Cannot assign to different employee.",
            "Phone number 9000000001 is already assigned to Asha. Cannot assign to different employee.",
        ]


class TestFairness:

    @pytest.mark.parametrize("lead_count,agent_count", [(7, 3), (6, 3), (5, 5), (11, 4)])
    def test_each_agent_gets_floor_or_ceil(self, db, make_agent, make_lead, lead_count, agent_count):
        agents = [make_agent() for _ in range(agent_count)]
        leads = [make_lead(f"90000000{i:02d}") for i in range(lead_count)]

        result = assign_leads_to_agents(db, [l["_id"] for l in leads], [a["_id"] for a in agents], ADMIN)

        per_agent = Counter(a["employee_id"] for a in result["assignments"])
        low, high = lead_count // agent_count, -(-lead_count // agent_count)
        assert result["total_assigned"] == lead_count
        assert all(low <= per_agent[a["_id"]] <= high for a in agents)

    def test_rotation_follows_requested_order(self, db, make_agent, make_lead):
        a, b = make_agent(), make_agent()
        leads = [make_lead(f"900000000{i}") for i in range(3)]

        result = assign_leads_to_agents(db, [l["_id"] for l in leads], [b["_id"], a["_id"]], ADMIN)

        assert [x["employee_id"] for x in result["assignments"]] == [b["_id"], a["_id"], b["_id"]]


class TestCounters:

    def test_new_assignments_increment_both_counters(self, db, make_agent, make_lead):
        agent = make_agent()
        leads = [make_lead("9000000001"), make_lead("9000000002")]

        assign_leads_to_agents(db, [l["_id"] for l in leads], [agent["_id"]], ADMIN)

        doc = _agent_doc(db, agent)
        assert doc["leads_assigned"] == 2
        assert doc["leads_pending"] == 2

    def test_repeat_assignment_to_same_agent_is_not_double_counted(self, db, make_agent, make_lead):
        agent = make_agent()
        lead = make_lead("9000000001")

        assign_leads_to_agents(db, [lead["_id"]], [agent["_id"]], ADMIN)
        again = assign_leads_to_agents(db, [lead["_id"]], [agent["_id"]], ADMIN)

        assert again["reassignments"] == 1
        assert _agent_doc(db, agent)["leads_assigned"] == 1

    def test_assigned_never_below_pending(self, db, make_agent, make_lead):
        agents = [make_agent() for _ in range(3)]
        ids = [a["_id"] for a in agents]
        leads = [make_lead(f"90000000{i:02d}") for i in range(8)]
        lead_ids = [l["_id"] for l in leads]

        assign_leads_to_agents(db, lead_ids[:5], ids, ADMIN)
        assign_leads_to_agents(db, lead_ids, ids[::-1], ADMIN)
        assign_leads_to_agents(db, lead_ids[3:], ids[1:], ADMIN)

        for doc in db[config.COLL_EMPLOYEES].find():
            assert doc["leads_assigned"] >= doc["leads_pending"]


class TestValidation:

    def test_empty_input(self, db):
        with pytest.raises(ValidationError, match="no leads or agents"):
            assign_leads_to_agents(db, [], [ObjectId()], ADMIN)
        with pytest.raises(ValidationError, match="no leads or agents"):
            assign_leads_to_agents(db, [ObjectId()], [], ADMIN)

    def test_missing_leads_are_named(self, db, make_agent, make_lead):
        agent = make_agent()
        lead = make_lead()
        ghost = ObjectId()

        with pytest.raises(ValidationError) as exc:
            assign_leads_to_agents(db, [lead["_id"], ghost, "not-an-id"], [agent["_id"]], ADMIN)

        assert exc.value.details["missing_lead_ids"] == ["not-an-id", str(ghost)]
        assert db[config.COLL_LEADS].find_one({"_id": lead["_id"]})["assigned_to"] is None

    def test_inactive_agents_are_named(self, db, make_agent, make_lead):
        active = make_agent()
        blocked = make_agent(is_blocked=True)
        lead = make_lead()

        with pytest.raises(ValidationError) as exc:
            assign_leads_to_agents(db, [lead["_id"]], [active["_id"], blocked["_id"]], ADMIN)

        assert exc.value.details["missing_agent_ids"] == [str(blocked["_id"])]

    def test_agents_by_employee_code(self, db, make_agent, make_lead):
        agent = make_agent()
        lead = make_lead()

        result = assign_leads_to_agents(db, [str(lead["_id"])], [agent["employee_id"]], ADMIN)

        assert result["assignments"][0]["employee_id"] == agent["_id"]

    def test_lead_without_number_is_reported(self, db, make_agent, make_lead):
        agent = make_agent()
        lead = make_lead(number="", mobile_numbers=[])

        result = assign_leads_to_agents(db, [lead["_id"]], [agent["_id"]], ADMIN)

        assert result["total_assigned"] == 0
        assert result["errors"] == [f"Lead {lead['_id']} has no valid phone number"]


class TestAssignedBy:

    def test_admin_object_id_is_stored_as_object_id(self, db, make_agent, make_lead):
        agent = make_agent()
        lead = make_lead()
        admin_id = ObjectId()

        assign_leads_to_agents(db, [lead["_id"]], [agent["_id"]], str(admin_id))

        assert db[config.COLL_LEADS].find_one({"_id": lead["_id"]})["assigned_by"] == admin_id

    def test_other_admin_ids_kept_as_given(self, db, make_agent, make_lead):
        agent = make_agent()
        lead = make_lead()

        assign_leads_to_agents(db, [lead["_id"]], [agent["_id"]], ADMIN)

        assert db[config.COLL_LEADS].find_one({"_id": lead["_id"]})["assigned_by"] == ADMIN


class TestConcurrentWrites:

    def test_lead_taken_after_planning_is_skipped(self, db, make_agent, make_lead, monkeypatch):
        agent = make_agent()
        lead = make_lead("9000000001")
        original = assignment.plan_assignments

        def plan_then_race(*args, **kwargs):
            planned = original(*args, **kwargs)
            db[config.COLL_LEADS].update_one({"_id": lead["_id"]}, {"$set": {"assigned_to": agent["_id"]}})
            return planned

        monkeypatch.setattr(assignment, "plan_assignments", plan_then_race)

        result = assign_leads_to_agents(db, [lead["_id"]], [agent["_id"]], ADMIN)

        assert result["total_assigned"] == 0
        assert "reassigned by another request" in result["errors"][0]
        assert _agent_doc(db, agent)["leads_assigned"] == 0


class TestNotifications:

    def test_one_event_per_new_assignment(self, db, make_agent, make_lead, recorder):
        agent = make_agent()
        lead = make_lead("9000000001")

        assign_leads_to_agents(db, [lead["_id"]], [agent["_id"]], ADMIN, notifier=recorder)

        assert len(recorder.sent) == 1
        agent_id, event = recorder.sent[0]
        assert agent_id == agent["_id"]
        assert event["type"] == "lead_assignment"
        assert event["related"]["lead_id"] == str(lead["_id"])

    def test_delivery_failure_does_not_fail_assignment(self, db, make_agent, make_lead, failing_recorder):
        agent = make_agent()
        lead = make_lead("9000000001")

        result = assign_leads_to_agents(db, [lead["_id"]], [agent["_id"]], ADMIN, notifier=failing_recorder)

        assert result["total_assigned"] == 1
        assert db[config.COLL_LEADS].find_one({"_id": lead["_id"]})["assigned_to"] == agent["_id"]
