from __future__ import annotations

import threading
from typing import Dict, List, Optional, Set, Tuple

import pytest

from enrol_saml.modules.audit.AuditLog import AuditLog
from enrol_saml.modules.models.ConfigurationStorage import EnrolSettings
from enrol_saml.modules.models.DirectoryRecords import (
    Course, EnrolmentChannel, Group, Role, User, PLUGIN_COMPONENT,
)
from enrol_saml.modules.moodle.DirectoryStore import DirectoryStore


class FakeDirectory(DirectoryStore):
    """In-memory directory store. Context id of a course == course id + 1000."""

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.courses: List[Course] = []
        self.course_idnumbers: Dict[int, str] = {}
        self.roles: Dict[str, Role] = {}
        self.instances: List[EnrolmentChannel] = []
        self.enrolments: Set[Tuple[int, int]] = set()  # (instance id, user id)
        self.role_assignments: Set[Tuple[int, int, int]] = set()  # (user, role, context)
        self.groups: List[Group] = []
        self.members: Dict[int, Dict[int, str]] = {}  # group id -> {user id: component}
        self.calls: List[tuple] = []
        self._lock = threading.Lock()
        self._next_id = 100

        self.add_course(Course(id=1, shortname="site"))

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    # ---- setup helpers ----

    def add_user(self, username: str) -> User:
        user = User(id=self._new_id(), username=username)
        self.users[username] = user
        return user

    def add_course(self, course: Course, idnumber: str = "") -> Course:
        self.courses.append(course)
        if idnumber:
            self.course_idnumbers[course.id] = idnumber
        return course

    def add_role(self, shortname: str, role_id: int) -> Role:
        role = Role(id=role_id, shortname=shortname)
        self.roles[shortname] = role
        return role

    def add_group(self, courseid: int, name: str) -> Group:
        group = Group(id=self._new_id(), courseid=courseid, name=name)
        self.groups.append(group)
        self.members[group.id] = {}
        return group

    def add_member(self, group: Group, user: User, component: str = "") -> None:
        self.members[group.id][user.id] = component

    def assign_role(self, user: User, role: Role, course: Course) -> None:
        self.role_assignments.add((user.id, role.id, course.id + 1000))

    def group_names_of(self, user: User, course: Course) -> List[str]:
        return sorted(g.name for g in self.get_user_groups(course.id, user.id))

    def has_role(self, user: User, role: Role, course: Course) -> bool:
        return (user.id, role.id, course.id + 1000) in self.role_assignments

    def writes(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in {
            "insert_enrol_instance", "enrol_user", "unenrol_user",
            "create_group", "add_group_member", "remove_group_member",
        }]

    # ---- DirectoryStore ----

    def get_user(self, username: str) -> Optional[User]:
        return self.users.get(username)

    def get_course(self, field: str, value: str) -> Optional[Course]:
        for course in self.courses:
            if field == "shortname" and course.shortname == value:
                return course
            if field == "idnumber" and self.course_idnumbers.get(course.id) == value:
                return course
            if field == "id" and str(course.id) == str(value):
                return course
        return None

    def get_role(self, shortname: str) -> Optional[Role]:
        return self.roles.get(shortname)

    def get_course_context_id(self, courseid: int) -> int:
        return courseid + 1000

    def user_has_role_assignment(self, userid: int, roleid: int, contextid: int) -> bool:
        return (userid, roleid, contextid) in self.role_assignments

    def get_enrol_instances(self, courseid: int, plugin: str,
                            enabled_only: bool = False) -> List[EnrolmentChannel]:
        return [
            i for i in self.instances
            if i.courseid == courseid and i.enrol == plugin and (i.enabled or not enabled_only)
        ]

    def insert_enrol_instance(self, channel: EnrolmentChannel) -> Optional[EnrolmentChannel]:
        with self._lock:
            if self.get_enrol_instances(channel.courseid, channel.enrol):
                return None
            channel.id = self._new_id()
            self.instances.append(channel)
        self.calls.append(("insert_enrol_instance", channel.courseid))
        return channel

    def enrol_user(self, channel: EnrolmentChannel, userid: int, roleid: int,
                   timestart: int = 0, timeend: int = 0, status: int = 0) -> None:
        self.calls.append(("enrol_user", channel.courseid, userid, roleid, status))
        self.enrolments.add((channel.id, userid))
        self.role_assignments.add((userid, roleid, channel.courseid + 1000))

    def unenrol_user(self, channel: EnrolmentChannel, userid: int) -> None:
        self.calls.append(("unenrol_user", channel.courseid, userid))
        self.enrolments.discard((channel.id, userid))
        context = channel.courseid + 1000
        self.role_assignments = {ra for ra in self.role_assignments if not (ra[0] == userid and ra[2] == context)}

    def get_group_by_name(self, courseid: int, name: str) -> Optional[Group]:
        for group in self.groups:
            if group.courseid == courseid and group.name == name:
                return group
        return None

    def create_group(self, courseid: int, name: str, description: str = "") -> Group:
        self.calls.append(("create_group", courseid, name, description))
        return self.add_group(courseid, name)

    def get_user_groups(self, courseid: int, userid: int) -> List[Group]:
        return [g for g in self.groups if g.courseid == courseid and userid in self.members[g.id]]

    def add_group_member(self, groupid: int, userid: int, component: str = PLUGIN_COMPONENT) -> None:
        self.calls.append(("add_group_member", groupid, userid, component))
        self.members[groupid][userid] = component

    def remove_group_member(self, groupid: int, userid: int) -> None:
        self.calls.append(("remove_group_member", groupid, userid))
        self.members[groupid].pop(userid, None)


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def logfile(tmp_path) -> str:
    return str(tmp_path / "enrol_saml.log")


@pytest.fixture
def settings(logfile: str) -> EnrolSettings:
    return EnrolSettings(logfile=logfile, created_group_info="Created by SAML sync")


@pytest.fixture
def audit(settings: EnrolSettings) -> AuditLog:
    return AuditLog(settings.logfile, settings.data_root)


@pytest.fixture
def log_lines(logfile: str):
    def read() -> List[str]:
        try:
            with open(logfile, "r", encoding="utf-8", newline="") as handle:
                return handle.read().split("\r\n")[:-1]
        except FileNotFoundError:
            return []

    return read
