from __future__ import annotations

import subprocess
from unittest.mock import MagicMock

import pytest

from enrol_saml.modules.models.DirectoryRecords import EnrolmentChannel, PLUGIN_NAME
from enrol_saml.modules.models.SyncOutcome import DirectoryError
from enrol_saml.modules.moodle.MoodleDirectory import MoodleDirectory
from enrol_saml.modules.moodle.moosh import MooshWrapper, parse_records, sql_quote

SQL_RUN_OUTPUT = """Record 1
stdClass Object
(
    [id] => 10
    [shortname] => CS101
    [groupmode] => 1
)
Record 2
stdClass Object
(
    [id] => 11
    [shortname] => O'Brien 101
    [groupmode] =>
)
"""


def completed(stdout: str = "", returncode: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr="")


@pytest.fixture
def run(monkeypatch) -> MagicMock:
    mock = MagicMock(return_value=completed())
    monkeypatch.setattr("enrol_saml.modules.moodle.moosh.subprocess.run", mock)
    return mock


def commands(run: MagicMock):
    return [c.args[0] for c in run.call_args_list]


def test_parse_records() -> None:
    records = parse_records(SQL_RUN_OUTPUT)

    assert records == [
        {"id": "10", "shortname": "CS101", "groupmode": "1"},
        {"id": "11", "shortname": "O'Brien 101", "groupmode": ""},
    ]
    assert parse_records("") == []


def test_sql_quote() -> None:
    assert sql_quote("O'Brien") == "'O''Brien'"
    assert sql_quote("a\\b") == "'a\\\\b'"
    assert sql_quote(5) == "5"
    assert sql_quote(True) == "1"
    assert sql_quote(None) == "NULL"


def test_moosh_command_line(run) -> None:
    moosh = MooshWrapper(moodle_path="/opt/moodle", timeout=5)

    moosh.sql_select("SELECT 1")

    run.assert_called_once_with(
        ["moosh", "-n", "-p", "/opt/moodle", "sql-run", "SELECT 1"],
        capture_output=True, text=True, timeout=5,
    )


def test_dry_run_skips_writes_but_not_reads(run) -> None:
    moosh = MooshWrapper(moodle_path="/opt/moodle", dry_run=True)

    assert moosh.sql_execute("DELETE FROM {user_enrolments}") is True
    assert run.call_count == 0

    moosh.sql_select("SELECT 1")
    assert run.call_count == 1


def test_timeout_is_reported_as_failure(run) -> None:
    run.side_effect = subprocess.TimeoutExpired(cmd="moosh", timeout=5)

    assert MooshWrapper(moodle_path="/opt/moodle").sql_select("SELECT 1") is None


def test_missing_binary_is_reported_as_failure(run) -> None:
    run.side_effect = FileNotFoundError("moosh")

    assert MooshWrapper(moodle_path="/opt/moodle").check_connection() is False


def test_get_course_by_shortname(run) -> None:
    run.return_value = completed(SQL_RUN_OUTPUT)
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    course = directory.get_course("shortname", "CS101")

    assert (course.id, course.shortname, course.groupmode) == (10, "CS101", 1)
    assert "WHERE shortname = 'CS101'" in commands(run)[0][-1]


def test_get_course_rejects_unknown_field(run) -> None:
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    with pytest.raises(DirectoryError):
        directory.get_course("fullname; DROP TABLE", "x")
    assert run.call_count == 0


def test_failed_query_raises(run) -> None:
    run.return_value = completed(returncode=1)
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    with pytest.raises(DirectoryError):
        directory.get_user("alice")


def test_missing_user(run) -> None:
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    assert directory.get_user("nobody") is None
    assert "username = 'nobody' AND deleted = 0" in commands(run)[0][-1]


def test_insert_enrol_instance_is_guarded(run) -> None:
    instance_row = "stdClass Object\n(\n [id] => 7\n [courseid] => 10\n [status] => 0\n" \
                   " [roleid] => 5\n [enrolperiod] => 0\n [enrol] => saml\n)\n"
    run.side_effect = [completed(""), completed(""), completed(instance_row)]
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    instance = directory.insert_enrol_instance(EnrolmentChannel(courseid=10, roleid=5))

    assert instance.id == 7
    insert = commands(run)[1][-1]
    assert insert.startswith("INSERT INTO {enrol}")
    assert "WHERE NOT EXISTS" in insert
    assert f"e.enrol = '{PLUGIN_NAME}'" in insert


def test_insert_enrol_instance_when_present(run) -> None:
    run.return_value = completed("stdClass Object\n(\n [id] => 7\n [courseid] => 10\n [status] => 1\n [enrol] => saml\n)\n")
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    assert directory.insert_enrol_instance(EnrolmentChannel(courseid=10)) is None
    assert run.call_count == 1


def test_create_group_in_dry_run(run) -> None:
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle", dry_run=True))

    group = directory.create_group(10, "G1", "Created by SAML sync")

    assert (group.id, group.courseid, group.name) == (0, 10, "G1")
    assert run.call_count == 0


def test_create_group(run) -> None:
    run.return_value = completed("42\n")
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    group = directory.create_group(10, "G1", "Created by SAML sync")

    assert group.id == 42
    assert commands(run)[0][-4:] == ["--description", "Created by SAML sync", "G1", "10"]


def test_remove_group_member_failure_raises(run) -> None:
    run.return_value = completed(returncode=1)
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    with pytest.raises(DirectoryError):
        directory.remove_group_member(3, 4)


def test_unenrol_keeps_roles_while_other_enrolments_remain(run) -> None:
    run.side_effect = [completed(""), completed("stdClass Object\n(\n [id] => 99\n)\n")]
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    directory.unenrol_user(EnrolmentChannel(courseid=10, id=7), 4)

    assert run.call_count == 2
    assert commands(run)[0][-1] == "DELETE FROM {user_enrolments} WHERE enrolid = 7 AND userid = 4"


def test_unenrol_last_enrolment_cleans_up(run) -> None:
    run.side_effect = [
        completed(""),
        completed(""),
        completed("stdClass Object\n(\n [id] => 1010\n)\n"),
        completed(""),
        completed(""),
        completed(""),
    ]
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    directory.unenrol_user(EnrolmentChannel(courseid=10, id=7), 4)

    sql = [c[-1] for c in commands(run)]
    assert sql[3] == "DELETE FROM {role_assignments} WHERE userid = 4 AND contextid = 1010"
    assert sql[4].startswith("DELETE FROM {groups_members} WHERE userid = 4")
    assert commands(run)[5][4] == "cache-clear"


def test_sql_quote_without_backslash_escapes() -> None:
    assert sql_quote("a\\b", backslash_escapes=False) == "'a\\b'"
    assert sql_quote("O'Brien", backslash_escapes=False) == "'O''Brien'"


def test_postgres_keeps_backslashes_literal(run) -> None:
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"), dbtype="pgsql")

    directory.get_user("a\\b")

    assert "username = 'a\\b' AND" in commands(run)[0][-1]


def test_mariadb_escapes_backslashes(run) -> None:
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"), dbtype="mariadb")

    directory.get_user("a\\b")

    assert "username = 'a\\\\b' AND" in commands(run)[0][-1]


@pytest.fixture
def frozen_time(monkeypatch) -> int:
    monkeypatch.setattr("enrol_saml.modules.moodle.MoodleDirectory.time.time", lambda: 1000)
    return 1000


def test_enrol_user_reactivates_existing_enrolment(run, frozen_time) -> None:
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    directory.enrol_user(EnrolmentChannel(courseid=10, id=7), 4, roleid=0)

    sql = [c[-1] for c in commands(run)]
    assert len(sql) == 2
    assert sql[0].startswith("INSERT INTO {user_enrolments}")
    assert "WHERE ue.enrolid = 7 AND ue.userid = 4" in sql[0]
    assert sql[1] == (
        "UPDATE {user_enrolments} SET status = 0, timemodified = 1000 "
        "WHERE enrolid = 7 AND userid = 4 AND status <> 0"
    )


def test_enrol_user_derives_period_from_instance(run, frozen_time) -> None:
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    directory.enrol_user(EnrolmentChannel(courseid=10, id=7, enrolperiod=3600), 4, roleid=0)

    assert "SELECT 7, 4, 0, 1000, 4600, 0, 1000, 1000 " in commands(run)[0][-1]


def test_enrol_user_without_period_is_unlimited(run, frozen_time) -> None:
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    directory.enrol_user(EnrolmentChannel(courseid=10, id=7), 4, roleid=0)

    assert "SELECT 7, 4, 0, 0, 0, 0, 1000, 1000 " in commands(run)[0][-1]


def test_enrol_user_assigns_role_once(run, frozen_time) -> None:
    run.side_effect = [
        completed(""),
        completed(""),
        completed("stdClass Object\n(\n [id] => 1010\n)\n"),
        completed(""),
        completed(""),
    ]
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    directory.enrol_user(EnrolmentChannel(courseid=10, id=7), 4, roleid=5)

    cmds = commands(run)
    assert "instanceid = 10" in cmds[2][-1]
    assignment = cmds[3][-1]
    assert assignment.startswith("INSERT INTO {role_assignments}")
    assert "SELECT 5, 1010, 4, 1000, 0, '', 0, 0 " in assignment
    assert "WHERE NOT EXISTS (SELECT 1 FROM {role_assignments} ra " \
           "WHERE ra.roleid = 5 AND ra.contextid = 1010 AND ra.userid = 4)" in assignment
    assert cmds[4][4] == "cache-clear"


def test_failed_cache_clear_only_warns(run, frozen_time, caplog) -> None:
    run.side_effect = [
        completed(""),
        completed(""),
        completed("stdClass Object\n(\n [id] => 1010\n)\n"),
        completed(""),
        completed(returncode=1),
    ]
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    directory.enrol_user(EnrolmentChannel(courseid=10, id=7), 4, roleid=5)

    assert "Could not purge Moodle caches" in caplog.text


def test_cache_clear_is_skipped_in_dry_run(run) -> None:
    assert MooshWrapper(moodle_path="/opt/moodle", dry_run=True).cache_clear() is True
    assert run.call_count == 0


def test_add_group_member(run, frozen_time) -> None:
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    directory.add_group_member(3, 4)

    insert = commands(run)[0][-1]
    assert insert.startswith("INSERT INTO {groups_members} (groupid, userid, timeadded, component, itemid)")
    assert "SELECT 3, 4, 1000, 'enrol_saml', 0 " in insert
    assert "WHERE gm.groupid = 3 AND gm.userid = 4)" in insert


def test_add_group_member_failure_raises(run) -> None:
    run.return_value = completed(returncode=1)
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    with pytest.raises(DirectoryError):
        directory.add_group_member(3, 4)


def test_get_user_groups(run) -> None:
    run.return_value = completed(
        "stdClass Object\n(\n [id] => 3\n [courseid] => 10\n [name] => G1\n)\n"
        "stdClass Object\n(\n [id] => 5\n [courseid] => 10\n [name] => Mathe 7b\n)\n"
    )
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    groups = directory.get_user_groups(10, 4)

    assert [(g.id, g.courseid, g.name) for g in groups] == [(3, 10, "G1"), (5, 10, "Mathe 7b")]
    assert "WHERE g.courseid = 10 AND gm.userid = 4" in commands(run)[0][-1]


def test_get_user_groups_empty(run) -> None:
    assert MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle")).get_user_groups(10, 4) == []


def test_insert_enrol_instance_after_lost_race_returns_winner(run) -> None:
    winner_row = "stdClass Object\n(\n [id] => 8\n [courseid] => 10\n [status] => 0\n" \
                 " [roleid] => 3\n [enrolperiod] => 0\n [enrol] => saml\n)\n"
    run.side_effect = [completed(""), completed(""), completed(winner_row)]
    directory = MoodleDirectory(MooshWrapper(moodle_path="/opt/moodle"))

    instance = directory.insert_enrol_instance(EnrolmentChannel(courseid=10, roleid=5))

    assert (instance.id, instance.roleid) == (8, 3)
