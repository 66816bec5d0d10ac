"""
Directory Store - Abstrakte Schnittstelle zu Kursen, Rollen, Gruppen und Einschreibungen

Der Enrolment-Sync arbeitet nur gegen diese Schnittstelle. Die Moodle-Anbindung
ueber moosh steckt in MoodleDirectory, Tests verwenden eine In-Memory-Variante.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from enrol_saml.modules.models.DirectoryRecords import (
    Course, EnrolmentChannel, Group, Role, User, PLUGIN_COMPONENT,
)

# Moodle: SITEID
SITE_COURSE_ID = 1


class DirectoryStore(ABC):
    """Persistenz-Schicht des Host-Systems (extern)"""

    site_course_id: int = SITE_COURSE_ID

    # ==================== LOOKUPS ====================

    @abstractmethod
    def get_user(self, username: str) -> Optional[User]:
        """Sucht einen Benutzer nach Username"""

    @abstractmethod
    def get_course(self, field: str, value: str) -> Optional[Course]:
        """
        Sucht einen Kurs ueber ein beliebiges Identifier-Feld

        Args:
            field: Kursfeld (z.B. 'shortname', 'idnumber')
            value: Gesuchter Wert

        Returns:
            Course oder None
        """

    @abstractmethod
    def get_role(self, shortname: str) -> Optional[Role]:
        """Sucht eine Rolle nach Shortname"""

    @abstractmethod
    def get_course_context_id(self, courseid: int) -> int:
        """Gibt die Kontext-ID eines Kurses zurueck"""

    @abstractmethod
    def user_has_role_assignment(self, userid: int, roleid: int, contextid: int) -> bool:
        """Prueft ob der Benutzer die Rolle im Kontext besitzt"""

    # ==================== ENROL INSTANCES ====================

    @abstractmethod
    def get_enrol_instances(self, courseid: int, plugin: str,
                            enabled_only: bool = False) -> List[EnrolmentChannel]:
        """Listet die Enrol-Instanzen eines Plugins in einem Kurs"""

    @abstractmethod
    def insert_enrol_instance(self, channel: EnrolmentChannel) -> Optional[EnrolmentChannel]:
        """
        Legt eine Enrol-Instanz an, falls fuer Kurs und Plugin noch keine existiert

        Returns:
            Die Instanz des Kurses nach dem Insert, None wenn vor dem Aufruf bereits
            eine existierte. Legt ein paralleler Aufruf die Instanz zwischen Pruefung
            und Insert an, darf dessen Instanz zurueckgegeben werden.
        """

    # ==================== ENROLMENTS ====================

    @abstractmethod
    def enrol_user(self, channel: EnrolmentChannel, userid: int, roleid: int,
                   timestart: int = 0, timeend: int = 0, status: int = 0):
        """Schreibt einen Benutzer ueber die Instanz ein und weist die Rolle zu"""

    @abstractmethod
    def unenrol_user(self, channel: EnrolmentChannel, userid: int):
        """Schreibt einen Benutzer aus der Instanz aus"""

    # ==================== GROUPS ====================

    @abstractmethod
    def get_group_by_name(self, courseid: int, name: str) -> Optional[Group]:
        """Sucht eine Gruppe ueber den exakten Namen"""

    @abstractmethod
    def create_group(self, courseid: int, name: str, description: str = "") -> Group:
        """Legt eine Gruppe im Kurs an"""

    @abstractmethod
    def get_user_groups(self, courseid: int, userid: int) -> List[Group]:
        """Listet die Gruppen eines Benutzers im Kurs"""

    @abstractmethod
    def add_group_member(self, groupid: int, userid: int, component: str = PLUGIN_COMPONENT):
        """Fuegt einen Benutzer zu einer Gruppe hinzu"""

    @abstractmethod
    def remove_group_member(self, groupid: int, userid: int):
        """Entfernt einen Benutzer aus einer Gruppe"""
