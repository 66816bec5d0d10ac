"""
Claim Set - Request-scoped Kontext mit den Rollen-/Kurs-Claims eines Logins

Die Claims kommen bereits dekodiert an (z.B. aus dem SAML-Auth-Plugin,
einer JSON-Datei oder aus Keycloak) und werden nach dem Sync geleert.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from enrol_saml.modules.models.SyncOutcome import ClaimFormatError

ACTIVE = "active"
INACTIVE = "inactive"


@dataclass
class ClaimSet:
    """
    Claims eines Benutzers fuer einen Login/Sync

    mapped_courses hat die Form:
        {role: {"active": {courseid: {"group": ...}}, "inactive": {courseid: {...}}}}
    """
    mapped_roles: List[str] = field(default_factory=list)
    mapped_courses: Dict[str, Dict[str, Dict[str, Dict[str, Any]]]] = field(default_factory=dict)
    remote_addr: str = "-"

    def active_courses(self, role: str) -> Dict[str, Dict[str, Any]]:
        return self.mapped_courses.get(role, {}).get(ACTIVE, {})

    def inactive_courses(self, role: str) -> Dict[str, Dict[str, Any]]:
        return self.mapped_courses.get(role, {}).get(INACTIVE, {})

    def clear(self):
        """Entfernt die verbrauchten Claims (nach jedem Sync-Lauf)"""
        self.mapped_roles = []
        self.mapped_courses = {}

    @property
    def is_empty(self) -> bool:
        return not self.mapped_roles

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], remote_addr: str = "-") -> "ClaimSet":
        """
        Erstellt ein ClaimSet aus dekodiertem JSON

        Args:
            data: Dictionary mit 'mapped_roles' und 'mapped_courses'
            remote_addr: Client-Adresse fuer das Audit-Log

        Returns:
            ClaimSet

        Raises:
            ClaimFormatError: Wenn die Struktur nicht passt
        """
        if not isinstance(data, Mapping):
            raise ClaimFormatError("claims must be an object")

        roles = data.get("mapped_roles") or []
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise ClaimFormatError("mapped_roles must be a list of role shortnames")

        raw_courses = data.get("mapped_courses") or {}
        if not isinstance(raw_courses, Mapping):
            raise ClaimFormatError("mapped_courses must be an object keyed by role")

        courses = {}
        for role, states in raw_courses.items():
            if states in (None, []):
                states = {}
            if not isinstance(states, Mapping):
                raise ClaimFormatError(f"mapped_courses[{role}] must be an object")
            courses[role] = {}
            for state in (ACTIVE, INACTIVE):
                if state in states:
                    courses[role][state] = cls._parse_course_map(role, state, states[state])

        return cls(
            mapped_roles=list(roles),
            mapped_courses=courses,
            remote_addr=data.get("remote_addr") or remote_addr,
        )

    @staticmethod
    def _parse_course_map(role: str, state: str, value: Any) -> Dict[str, Dict[str, Any]]:
        # Leere PHP-Arrays kommen als [] an
        if value in (None, []):
            return {}
        if not isinstance(value, Mapping):
            raise ClaimFormatError(f"mapped_courses[{role}][{state}] must be an object")

        result = {}
        for course_id, info in value.items():
            if info in (None, []):
                info = {}
            if not isinstance(info, Mapping):
                raise ClaimFormatError(
                    f"mapped_courses[{role}][{state}][{course_id}] must be an object"
                )
            result[str(course_id)] = dict(info)
        return result
