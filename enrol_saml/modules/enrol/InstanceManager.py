"""
Instance Manager - Genau eine SAML-Enrol-Instanz pro Kurs

Die Instanz wird beim ersten Bedarf mit den konfigurierten Defaults angelegt
und vom Sync nie geloescht.
"""

import logging
from typing import Any, Dict, Optional

from enrol_saml.modules.models.ConfigurationStorage import EnrolSettings
from enrol_saml.modules.models.DirectoryRecords import Course, EnrolmentChannel, PLUGIN_NAME
from enrol_saml.modules.moodle.DirectoryStore import DirectoryStore

logger = logging.getLogger(__name__)


class InstanceManager:
    """
    Verwaltet die Enrol-Instanzen des Plugins

    Kein Locking: die Eindeutigkeit pro Kurs garantiert der Directory Store
    (insert-if-absent). Wer ein Rennen verliert bekommt None und liest neu.
    """

    def __init__(self, directory: DirectoryStore, settings: EnrolSettings):
        self.directory = directory
        self.settings = settings

    def get_instance(self, course: Course) -> Optional[EnrolmentChannel]:
        """
        Sucht die aktive Instanz des Plugins im Kurs

        Args:
            course: Kurs

        Returns:
            EnrolmentChannel oder None
        """
        for instance in self.directory.get_enrol_instances(course.id, PLUGIN_NAME, enabled_only=True):
            if instance.enrol == PLUGIN_NAME:
                return instance
        return None

    def add_instance(self, course: Course, fields: Dict[str, Any] = None) -> Optional[EnrolmentChannel]:
        """
        Legt eine neue Instanz an

        Args:
            course: Kurs
            fields: Optionale Felder (status, enrolperiod, roleid)

        Returns:
            Neue Instanz oder None wenn bereits eine existiert
        """
        if self.directory.get_enrol_instances(course.id, PLUGIN_NAME):
            # Only one instance allowed.
            return None

        fields = fields or {}
        channel = EnrolmentChannel(
            courseid=course.id,
            status=fields.get('status', self.settings.status),
            enrolperiod=fields.get('enrolperiod', 0),
            roleid=fields.get('roleid', 0),
        )
        instance = self.directory.insert_enrol_instance(channel)
        if instance:
            logger.info(f"Enrol instance {instance.id} ready in course {course.shortname}")
        return instance

    def add_default_instance(self, course: Course) -> Optional[EnrolmentChannel]:
        """Legt eine Instanz mit den konfigurierten Defaults an"""
        return self.add_instance(course, {
            'status': self.settings.status,
            'enrolperiod': self.settings.enrolperiod,
            'roleid': self.settings.roleid,
        })

    def get_or_create_instance(self, course: Course) -> Optional[EnrolmentChannel]:
        """
        Gibt die vorhandene Instanz zurueck oder legt sie an

        Args:
            course: Kurs

        Returns:
            EnrolmentChannel oder None wenn keine aktive Instanz verfuegbar ist
        """
        instance = self.get_instance(course)
        if instance is None:
            instance = self.add_default_instance(course)
        if instance is None:
            # Paralleler Sync war schneller oder Instanz ist deaktiviert
            instance = self.get_instance(course)
            if instance is not None:
                logger.debug(f"Enrol instance for course {course.shortname} created concurrently")
        if instance is not None and not instance.enabled:
            return None
        return instance
