"""Tests for the JSON-file authoritative store."""

import pytest

from conftest import ADMIN_EMAIL, PASSWORD

from tracker.server.datastore import DataStore


def _category(category_id="c1", title="Arrays", order_index=0):
    return {"id": category_id, "title": title, "order_index": order_index}


def _problem(problem_id="p1", category_id="c1", difficulty="Easy"):
    return {
        "id": problem_id,
        "category_id": category_id,
        "title": "Two Sum",
        "url": "",
        "platform": "LeetCode",
        "difficulty": difficulty,
        "completed": False,
        "note": "",
    }


class TestRegistration:
    def test_rejects_invalid_email(self, datastore):
        with pytest.raises(ValueError, match="valid email"):
            datastore.register_user("not-an-email", PASSWORD)

    def test_rejects_short_password(self, datastore):
        with pytest.raises(ValueError, match="at least 6"):
            datastore.register_user("a@example.com", "12345")

    def test_rejects_duplicate_email_case_insensitively(self, datastore, accounts):
        with pytest.raises(ValueError, match="already exists"):
            datastore.register_user(ADMIN_EMAIL.upper(), PASSWORD)

    def test_profile_fields_are_stored(self, datastore):
        user = datastore.register_user("p@example.com", PASSWORD, {"name": "Pat", "city": "Pune", "extra": "x"})
        profile = datastore.get_profile(user["id"])
        assert profile["name"] == "Pat"
        assert profile["city"] == "Pune"
        assert "extra" not in profile

    def test_verify_credentials(self, datastore, accounts):
        assert datastore.verify_credentials(ADMIN_EMAIL, PASSWORD)["id"] == accounts["admin"]
        assert datastore.verify_credentials(ADMIN_EMAIL, "wrong-password") is None
        assert datastore.verify_credentials("nobody@example.com", PASSWORD) is None


class TestPasswordReset:
    def test_reset_flow_changes_password_once(self, datastore, accounts):
        token = datastore.request_password_reset(ADMIN_EMAIL)
        assert token
        assert datastore.complete_password_reset(token, "new-secret")
        assert datastore.verify_credentials(ADMIN_EMAIL, "new-secret")
        assert not datastore.complete_password_reset(token, "again-secret")

    def test_unknown_email_gets_no_token(self, datastore):
        assert datastore.request_password_reset("ghost@example.com") is None


class TestCatalog:
    def test_non_admin_cannot_upsert(self, datastore, accounts):
        with pytest.raises(PermissionError):
            datastore.upsert_catalog([_category()], [], accounts["learner"])

    def test_problem_requires_known_category(self, datastore, accounts):
        with pytest.raises(ValueError, match="unknown category"):
            datastore.upsert_catalog([], [_problem(category_id="missing")], accounts["admin"])

    def test_invalid_difficulty_rejected(self, datastore, accounts):
        with pytest.raises(ValueError, match="difficulty"):
            datastore.upsert_catalog([_category()], [_problem(difficulty="Brutal")], accounts["admin"])

    def test_rejected_batch_writes_nothing(self, datastore, accounts):
        datastore.upsert_catalog([_category("c1", "Arrays")], [], accounts["admin"])
        revision = datastore.revision
        with pytest.raises(ValueError, match="unknown category"):
            datastore.upsert_catalog(
                [_category("c9", "Graphs", 1), _category("c1", "Renamed")],
                [_problem("p9", category_id="missing")],
                accounts["admin"],
            )
        assert [(row["id"], row["title"]) for row in datastore.list_categories(accounts["admin"])] == [("c1", "Arrays")]
        assert datastore.list_problems(accounts["admin"]) == []
        assert datastore.revision == revision

    def test_problem_may_reference_category_in_same_batch(self, datastore, accounts):
        assert datastore.upsert_catalog([_category("c9", "Graphs")], [_problem("p9", category_id="c9")], accounts["admin"]) == 2
        assert [row["category_id"] for row in datastore.list_problems(accounts["admin"])] == ["c9"]

    def test_shared_catalog_lists_admin_rows_in_order(self, datastore, accounts):
        datastore.upsert_catalog(
            [_category("c2", "Graphs", 1), _category("c1", "Arrays", 0)],
            [_problem()],
            accounts["admin"],
        )
        assert [row["id"] for row in datastore.list_shared_categories()] == ["c1", "c2"]
        assert [row["id"] for row in datastore.list_shared_problems()] == ["p1"]

    def test_deleting_category_cascades_to_problems_and_progress(self, datastore, accounts):
        datastore.upsert_catalog([_category()], [_problem()], accounts["admin"])
        datastore.upsert_progress(
            [{"user_id": accounts["learner"], "problem_id": "p1", "completed": True, "note": ""}],
            accounts["learner"],
        )
        assert datastore.delete_catalog_rows(["c1"], [], accounts["admin"]) == (1, 1)
        assert datastore.list_problems(accounts["admin"]) == []
        assert datastore.list_progress(accounts["learner"]) == []


class TestProgress:
    def test_rows_for_another_user_are_rejected(self, datastore, accounts):
        datastore.upsert_catalog([_category()], [_problem()], accounts["admin"])
        with pytest.raises(PermissionError):
            datastore.upsert_progress(
                [{"user_id": accounts["admin"], "problem_id": "p1", "completed": True}],
                accounts["learner"],
            )

    def test_unknown_problem_rejected(self, datastore, accounts):
        with pytest.raises(ValueError):
            datastore.upsert_progress(
                [{"user_id": accounts["learner"], "problem_id": "nope", "completed": True}],
                accounts["learner"],
            )

    def test_upsert_is_keyed_by_user_and_problem(self, datastore, accounts):
        datastore.upsert_catalog([_category()], [_problem()], accounts["admin"])
        row = {"user_id": accounts["learner"], "problem_id": "p1", "completed": True, "note": "first"}
        datastore.upsert_progress([row], accounts["learner"])
        datastore.upsert_progress([{**row, "note": "second"}], accounts["learner"])
        progress = datastore.list_progress(accounts["learner"])
        assert len(progress) == 1
        assert progress[0]["note"] == "second"


class TestChangesAndPersistence:
    def test_mutations_bump_revision_and_notify(self, datastore, accounts):
        seen = []
        remove = datastore.add_listener(seen.append)
        before = datastore.revision
        datastore.upsert_catalog([_category()], [], accounts["admin"])
        assert datastore.revision == before + 1
        assert seen == [before + 1]
        remove()
        datastore.upsert_catalog([_category(title="Renamed")], [], accounts["admin"])
        assert len(seen) == 1

    def test_data_survives_reopen(self, tmp_path, datastore, accounts):
        datastore.upsert_catalog([_category()], [_problem()], accounts["admin"])
        reopened = DataStore(tmp_path / "store.json")
        assert reopened.is_admin(accounts["admin"])
        assert [row["id"] for row in reopened.list_problems(accounts["admin"])] == ["p1"]
