"""
Directory Records - Datenklassen fuer die Moodle-Objekte die der Sync liest
"""

from dataclasses import dataclass

from enrol_saml.modules.models.ConfigurationStorage import ENROL_INSTANCE_ENABLED

PLUGIN_NAME = "saml"
PLUGIN_COMPONENT = "enrol_saml"

# Moodle: NOGROUPS
GROUPMODE_NONE = 0


@dataclass
class User:
    """Moodle-Benutzer"""
    id: int
    username: str


@dataclass
class Course:
    """Moodle-Kurs"""
    id: int
    shortname: str
    groupmode: int = GROUPMODE_NONE


@dataclass
class Role:
    """Moodle-Rolle"""
    id: int
    shortname: str


@dataclass
class Group:
    """Gruppe innerhalb eines Kurses"""
    id: int
    courseid: int
    name: str


@dataclass
class EnrolmentChannel:
    """Enrol-Instanz dieses Plugins in einem Kurs (max. eine pro Kurs)"""
    courseid: int
    id: int = 0
    status: int = ENROL_INSTANCE_ENABLED
    roleid: int = 0
    enrolperiod: int = 0  # Sekunden, 0 = unbegrenzt
    enrol: str = PLUGIN_NAME

    @property
    def enabled(self) -> bool:
        return self.status == ENROL_INSTANCE_ENABLED
