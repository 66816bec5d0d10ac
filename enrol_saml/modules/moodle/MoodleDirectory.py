"""
Moodle Directory - DirectoryStore-Implementierung ueber moosh

Lookups und Enrol-Tabellen laufen ueber 'moosh sql-run', Kursgruppen
ueber die group-* Befehle. Schlaegt ein Befehl fehl, wird DirectoryError
geworfen; der Enrolment-Sync behandelt das als Abbruch des Laufs.
"""

import time
import logging
from typing import Dict, List, Optional

from enrol_saml.modules.models.DirectoryRecords import (
    Course, EnrolmentChannel, Group, Role, User, GROUPMODE_NONE, PLUGIN_COMPONENT,
)
from enrol_saml.modules.models.ConfigurationStorage import ENROL_INSTANCE_ENABLED
from enrol_saml.modules.models.SyncOutcome import DirectoryError
from enrol_saml.modules.moodle.DirectoryStore import DirectoryStore
from enrol_saml.modules.moodle.moosh import MooshWrapper, sql_quote

logger = logging.getLogger(__name__)

# Moodle: CONTEXT_COURSE
CONTEXT_COURSE = 50

COURSE_FIELDS = ('id', 'shortname', 'idnumber', 'fullname')

# Moodle $CFG->dbtype-Werte, bei denen Backslash in Strings ein Escape-Zeichen ist
BACKSLASH_ESCAPE_DBTYPES = ('mysqli', 'mariadb', 'auroramysql')


class MoodleDirectory(DirectoryStore):
    """Zugriff auf die Moodle-Datenbank ueber den MooshWrapper"""

    def __init__(self, moosh: MooshWrapper, dbtype: str = "mariadb"):
        """
        Initialisiert den Directory Store

        Args:
            moosh: Moosh Wrapper fuer die Moodle-Installation
            dbtype: Moodle-Datenbanktyp ($CFG->dbtype), bestimmt das String-Quoting
        """
        self.moosh = moosh
        self.dbtype = (dbtype or "mariadb").lower()

    def _quote(self, value) -> str:
        return sql_quote(value, backslash_escapes=self.dbtype in BACKSLASH_ESCAPE_DBTYPES)

    def _purge_access_caches(self):
        """Invalidiert Moodles Caches nach direkten Schreibzugriffen auf Rollen und Gruppen"""
        if not self.moosh.cache_clear():
            logger.warning("Could not purge Moodle caches, role changes may show up delayed")

    def _select(self, query: str) -> List[Dict[str, str]]:
        records = self.moosh.sql_select(query)
        if records is None:
            raise DirectoryError(f"Query failed: {query}")
        return records

    def _execute(self, query: str):
        if not self.moosh.sql_execute(query):
            raise DirectoryError(f"Statement failed: {query}")

    # ==================== LOOKUPS ====================

    def get_user(self, username: str) -> Optional[User]:
        records = self._select(
            f"SELECT id, username FROM {{user}} "
            f"WHERE username = {self._quote(username)} AND deleted = 0"
        )
        if not records:
            return None
        return User(id=int(records[0]['id']), username=records[0]['username'])

    def get_course(self, field: str, value: str) -> Optional[Course]:
        if field not in COURSE_FIELDS:
            raise DirectoryError(f"Unsupported course identifier field: {field}")

        records = self._select(
            f"SELECT id, shortname, groupmode FROM {{course}} "
            f"WHERE {field} = {self._quote(value)}"
        )
        if not records:
            return None
        if len(records) > 1:
            logger.warning(f"Course {field}={value} is not unique, using first match")
        record = records[0]
        return Course(
            id=int(record['id']),
            shortname=record['shortname'],
            groupmode=int(record.get('groupmode') or GROUPMODE_NONE)
        )

    def get_role(self, shortname: str) -> Optional[Role]:
        records = self._select(
            f"SELECT id, shortname FROM {{role}} WHERE shortname = {self._quote(shortname)}"
        )
        if not records:
            return None
        return Role(id=int(records[0]['id']), shortname=records[0]['shortname'])

    def get_course_context_id(self, courseid: int) -> int:
        records = self._select(
            f"SELECT id FROM {{context}} "
            f"WHERE contextlevel = {CONTEXT_COURSE} AND instanceid = {int(courseid)}"
        )
        if not records:
            raise DirectoryError(f"No context for course {courseid}")
        return int(records[0]['id'])

    def user_has_role_assignment(self, userid: int, roleid: int, contextid: int) -> bool:
        records = self._select(
            f"SELECT id FROM {{role_assignments}} "
            f"WHERE userid = {int(userid)} AND roleid = {int(roleid)} AND contextid = {int(contextid)}"
        )
        return bool(records)

    # ==================== ENROL INSTANCES ====================

    def get_enrol_instances(self, courseid: int, plugin: str,
                            enabled_only: bool = False) -> List[EnrolmentChannel]:
        query = (
            f"SELECT id, courseid, status, roleid, enrolperiod, enrol FROM {{enrol}} "
            f"WHERE courseid = {int(courseid)} AND enrol = {self._quote(plugin)}"
        )
        if enabled_only:
            query += f" AND status = {ENROL_INSTANCE_ENABLED}"
        query += " ORDER BY sortorder, id"

        return [
            EnrolmentChannel(
                id=int(r['id']),
                courseid=int(r['courseid']),
                status=int(r['status']),
                roleid=int(r.get('roleid') or 0),
                enrolperiod=int(r.get('enrolperiod') or 0),
                enrol=r['enrol'],
            )
            for r in self._select(query)
        ]

    def insert_enrol_instance(self, channel: EnrolmentChannel) -> Optional[EnrolmentChannel]:
        if self.get_enrol_instances(channel.courseid, channel.enrol):
            return None

        now = int(time.time())
        courseid = int(channel.courseid)
        plugin = self._quote(channel.enrol)
        self._execute(
            f"INSERT INTO {{enrol}} "
            f"(enrol, status, courseid, sortorder, enrolperiod, roleid, timecreated, timemodified) "
            f"SELECT {plugin}, {int(channel.status)}, {courseid}, "
            f"(SELECT COALESCE(MAX(s.sortorder) + 1, 0) FROM {{enrol}} s WHERE s.courseid = {courseid}), "
            f"{int(channel.enrolperiod)}, {int(channel.roleid)}, {now}, {now} "
            f"FROM (SELECT 1 AS one) dummy "
            f"WHERE NOT EXISTS (SELECT 1 FROM {{enrol}} e WHERE e.courseid = {courseid} AND e.enrol = {plugin})"
        )

        if self.moosh.dry_run:
            return channel

        # Hat ein paralleles Insert gewonnen, ist das hier dessen Zeile
        instances = self.get_enrol_instances(courseid, channel.enrol)
        return instances[0] if instances else None

    # ==================== ENROLMENTS ====================

    def enrol_user(self, channel: EnrolmentChannel, userid: int, roleid: int,
                   timestart: int = 0, timeend: int = 0, status: int = 0):
        now = int(time.time())
        userid = int(userid)
        if timestart == 0 and channel.enrolperiod:
            timestart = now
        if timeend == 0 and channel.enrolperiod:
            timeend = timestart + channel.enrolperiod

        self._execute(
            f"INSERT INTO {{user_enrolments}} "
            f"(enrolid, userid, status, timestart, timeend, modifierid, timecreated, timemodified) "
            f"SELECT {int(channel.id)}, {userid}, {int(status)}, {int(timestart)}, {int(timeend)}, 0, {now}, {now} "
            f"FROM (SELECT 1 AS one) dummy "
            f"WHERE NOT EXISTS (SELECT 1 FROM {{user_enrolments}} ue "
            f"WHERE ue.enrolid = {int(channel.id)} AND ue.userid = {userid})"
        )
        # Bestehende (z.B. suspendierte) Einschreibung auf den Status setzen
        self._execute(
            f"UPDATE {{user_enrolments}} SET status = {int(status)}, timemodified = {now} "
            f"WHERE enrolid = {int(channel.id)} AND userid = {userid} AND status <> {int(status)}"
        )

        if roleid:
            contextid = self.get_course_context_id(channel.courseid)
            self._execute(
                f"INSERT INTO {{role_assignments}} "
                f"(roleid, contextid, userid, timemodified, modifierid, component, itemid, sortorder) "
                f"SELECT {int(roleid)}, {contextid}, {userid}, {now}, 0, '', 0, 0 "
                f"FROM (SELECT 1 AS one) dummy "
                f"WHERE NOT EXISTS (SELECT 1 FROM {{role_assignments}} ra "
                f"WHERE ra.roleid = {int(roleid)} AND ra.contextid = {contextid} AND ra.userid = {userid})"
            )
            self._purge_access_caches()

    def unenrol_user(self, channel: EnrolmentChannel, userid: int):
        userid = int(userid)
        courseid = int(channel.courseid)
        self._execute(
            f"DELETE FROM {{user_enrolments}} "
            f"WHERE enrolid = {int(channel.id)} AND userid = {userid}"
        )

        remaining = self._select(
            f"SELECT ue.id FROM {{user_enrolments}} ue "
            f"JOIN {{enrol}} e ON e.id = ue.enrolid "
            f"WHERE e.courseid = {courseid} AND ue.userid = {userid}"
        )
        if remaining:
            return

        # Letzte Einschreibung im Kurs: Rollen und Gruppen entfernen
        contextid = self.get_course_context_id(courseid)
        self._execute(
            f"DELETE FROM {{role_assignments}} WHERE userid = {userid} AND contextid = {contextid}"
        )
        self._execute(
            f"DELETE FROM {{groups_members}} WHERE userid = {userid} "
            f"AND groupid IN (SELECT id FROM {{groups}} WHERE courseid = {courseid})"
        )
        self._purge_access_caches()

    # ==================== GROUPS ====================

    def get_group_by_name(self, courseid: int, name: str) -> Optional[Group]:
        records = self._select(
            f"SELECT id, courseid, name FROM {{groups}} "
            f"WHERE courseid = {int(courseid)} AND name = {self._quote(name)}"
        )
        if not records:
            return None
        return Group(id=int(records[0]['id']), courseid=int(records[0]['courseid']), name=records[0]['name'])

    def create_group(self, courseid: int, name: str, description: str = "") -> Group:
        group_id = self.moosh.group_create(name, courseid, description=description)
        if group_id is None:
            if self.moosh.dry_run:
                return Group(id=0, courseid=courseid, name=name)
            raise DirectoryError(f"Could not create group {name} in course {courseid}")
        return Group(id=group_id, courseid=courseid, name=name)

    def get_user_groups(self, courseid: int, userid: int) -> List[Group]:
        records = self._select(
            f"SELECT g.id, g.courseid, g.name FROM {{groups}} g "
            f"JOIN {{groups_members}} gm ON gm.groupid = g.id "
            f"WHERE g.courseid = {int(courseid)} AND gm.userid = {int(userid)}"
        )
        return [Group(id=int(r['id']), courseid=int(r['courseid']), name=r['name']) for r in records]

    def add_group_member(self, groupid: int, userid: int, component: str = PLUGIN_COMPONENT):
        now = int(time.time())
        self._execute(
            f"INSERT INTO {{groups_members}} (groupid, userid, timeadded, component, itemid) "
            f"SELECT {int(groupid)}, {int(userid)}, {now}, {self._quote(component)}, 0 "
            f"FROM (SELECT 1 AS one) dummy "
            f"WHERE NOT EXISTS (SELECT 1 FROM {{groups_members}} gm "
            f"WHERE gm.groupid = {int(groupid)} AND gm.userid = {int(userid)})"
        )

    def remove_group_member(self, groupid: int, userid: int):
        if not self.moosh.group_memberremove(groupid, userid):
            raise DirectoryError(f"Could not remove user {userid} from group {groupid}")
