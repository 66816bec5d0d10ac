"""
Claim Mapper - Baut ein ClaimSet aus den Keycloak-Gruppen eines Benutzers

Rollen-Gruppen (ROLE_MAPPINGS: Gruppenname -> Moodle-Rolle) liefern
mapped_roles. Kurs-Gruppen (Attribut COURSE_SYNC_ATTRIBUTE = true) liefern
die Kurse, die jeder gemappten Rolle zugeordnet werden.
"""

import logging
from typing import Dict, List, Optional

from enrol_saml.modules.keycloak.keycloak import KeycloakClient
from enrol_saml.modules.models.ClaimSet import ClaimSet, ACTIVE, INACTIVE
from enrol_saml.modules.models.ConfigurationStorage import ConfigurationStorage

logger = logging.getLogger(__name__)


def _first(attrs: Dict[str, List[str]], name: str) -> Optional[str]:
    values = attrs.get(name) or []
    return values[0] if values else None


def _is_true(attrs: Dict[str, List[str]], name: str) -> bool:
    value = _first(attrs, name)
    return value is not None and value.lower() in ('1', 'true', 'yes', 'on')


class ClaimMapper:
    """Mappt Keycloak-Gruppen auf Rollen- und Kurs-Claims"""

    def __init__(
        self,
        client: KeycloakClient,
        role_mappings: Dict[str, str],
        course_attribute: str = "moodleCourse",
        shortname_attribute: str = "courseShortname",
        inactive_attribute: str = "courseInactive",
        group_attribute: str = "courseGroup"
    ):
        """
        Initialisiert den Mapper

        Args:
            client: Keycloak Client
            role_mappings: Keycloak-Gruppenname -> Moodle-Rollen-Shortname
            course_attribute: Gruppenattribut das eine Kurs-Gruppe markiert
            shortname_attribute: Gruppenattribut mit der Kurs-ID
            inactive_attribute: Gruppenattribut das den Kurs als inaktiv markiert
            group_attribute: Gruppenattribut mit dem Namen der Kursgruppe
        """
        self.client = client
        self.role_mappings = role_mappings
        self.course_attribute = course_attribute
        self.shortname_attribute = shortname_attribute
        self.inactive_attribute = inactive_attribute
        self.group_attribute = group_attribute

    @classmethod
    def from_config(cls, config: ConfigurationStorage) -> "ClaimMapper":
        """Erstellt Mapper und Keycloak Client aus der Konfiguration"""
        client = KeycloakClient(
            server_url=config.get("KEYCLOAK_SERVER_URL"),
            realm=config.get("KEYCLOAK_REALM"),
            client_id=config.get("KEYCLOAK_CLIENT_ID"),
            client_secret=config.get("KEYCLOAK_SECRET_KEY"),
            verify_ssl=config.get_bool("KEYCLOAK_VERIFY_SSL")
        )
        role_mappings = config.get("ROLE_MAPPINGS", {})
        if not isinstance(role_mappings, dict):
            logger.warning("ROLE_MAPPINGS is not a JSON object, ignoring")
            role_mappings = {}

        return cls(
            client,
            role_mappings,
            course_attribute=config.get("COURSE_SYNC_ATTRIBUTE", "moodleCourse"),
            shortname_attribute=config.get("COURSE_SHORTNAME_ATTRIBUTE", "courseShortname"),
            inactive_attribute=config.get("COURSE_INACTIVE_ATTRIBUTE", "courseInactive"),
            group_attribute=config.get("COURSE_GROUP_ATTRIBUTE", "courseGroup"),
        )

    def claims_for_username(self, username: str, remote_addr: str = "-") -> ClaimSet:
        """
        Baut die Claims eines Benutzers

        Args:
            username: Keycloak-Username
            remote_addr: Client-Adresse fuer das Audit-Log

        Returns:
            ClaimSet (leer wenn der Benutzer nicht existiert)
        """
        user = self.client.get_user_by_username(username)
        if user is None:
            logger.warning(f"User {username} not found in Keycloak")
            return ClaimSet(remote_addr=remote_addr)

        groups = self.client.get_user_groups(user['id'])

        roles = []
        for group in groups:
            role = self.role_mappings.get(group.get('name'))
            if role and role not in roles:
                roles.append(role)

        courses = {}
        for group in groups:
            if group.get('name') in self.role_mappings:
                continue

            attrs = group.get('attributes') or self.client.get_group_attributes(group['id'])
            if not _is_true(attrs, self.course_attribute):
                continue

            course_id = _first(attrs, self.shortname_attribute) or group.get('name')
            state = INACTIVE if _is_true(attrs, self.inactive_attribute) else ACTIVE
            info = {}
            course_group = _first(attrs, self.group_attribute)
            if course_group:
                info['group'] = course_group

            for role in roles:
                courses.setdefault(role, {}).setdefault(state, {})[course_id] = dict(info)

        logger.debug(f"Mapped {len(roles)} roles and {len(courses)} course sets for {username}")
        return ClaimSet(mapped_roles=roles, mapped_courses=courses, remote_addr=remote_addr)
