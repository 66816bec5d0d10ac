"""
Group Reconciler - Gleicht die Gruppenzugehoerigkeit eines Users in einem Kurs ab
"""

import logging
from typing import Any, Iterable, Mapping, Optional

from enrol_saml.modules.audit.AuditLog import AuditLog
from enrol_saml.modules.enrol.prefixes import group_matches_prefixes
from enrol_saml.modules.models.ConfigurationStorage import EnrolSettings
from enrol_saml.modules.models.DirectoryRecords import Course, User, GROUPMODE_NONE, PLUGIN_COMPONENT
from enrol_saml.modules.models.SyncOutcome import SyncOutcome
from enrol_saml.modules.moodle.DirectoryStore import DirectoryStore

logger = logging.getLogger(__name__)


class GroupReconciler:
    """
    Setzt die Kursgruppe eines Users auf die Gruppe aus den Claims

    Andere Gruppen werden nur verlassen, wenn sie zu den verwalteten
    Praefixen passen. Manuell gepflegte Gruppen bleiben unangetastet.
    """

    def __init__(self, directory: DirectoryStore, audit: AuditLog, settings: EnrolSettings):
        self.directory = directory
        self.audit = audit
        self.settings = settings

    def assign_group(
        self,
        course_info: Optional[Mapping[str, Any]],
        course: Course,
        user: User,
        prefixes: Iterable[str] = (),
        outcome: SyncOutcome = None,
        remote_addr: str = "-"
    ):
        """
        Gleicht die Gruppenzugehoerigkeit ab

        Args:
            course_info: Claim-Payload des Kurses (mit optionalem 'group')
            course: Kurs
            user: Benutzer
            prefixes: Verwaltete Gruppen-Praefixe
            outcome: Optionales Ergebnis zum Zaehlen der Aenderungen
            remote_addr: Client-Adresse fuer das Audit-Log
        """
        if not course.groupmode or course.groupmode == GROUPMODE_NONE:
            return
        if not course_info or course_info.get('group') is None:
            return

        prefixes = tuple(prefixes)
        groupname = course_info['group']
        if not group_matches_prefixes(groupname, prefixes):
            logger.debug(f"Group {groupname} does not match managed prefixes, skipping")
            return

        group = self.directory.get_group_by_name(course.id, groupname)
        if group is None:
            group = self.directory.create_group(course.id, groupname, self.settings.created_group_info)
            self.audit.write_best_effort(
                f"Group {groupname} created on course {course.shortname}", "info", remote_addr
            )
            if outcome is not None:
                outcome.groups_created += 1

        found = False
        for current in self.directory.get_user_groups(course.id, user.id):
            if current.id == group.id:
                found = True
            elif group_matches_prefixes(current.name, prefixes):
                # Unassign from previous groups
                self.directory.remove_group_member(current.id, user.id)
                self.audit.write_best_effort(
                    f"{user.username} unassigned from group {current.name} from course {course.shortname}",
                    "info", remote_addr
                )
                if outcome is not None:
                    outcome.groups_unassigned += 1

        if not found:
            self.directory.add_group_member(group.id, user.id, PLUGIN_COMPONENT)
            self.audit.write_best_effort(
                f"{user.username} assigned to group {groupname} from course {course.shortname}",
                "info", remote_addr
            )
            if outcome is not None:
                outcome.groups_assigned += 1
