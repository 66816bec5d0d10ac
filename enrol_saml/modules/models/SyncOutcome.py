"""
Sync Outcome - Sammelt nicht-fatale Fehler eines Sync-Laufs

Ersetzt das globale Fehler-Array: der Aufrufer bekommt das Ergebnis
zurueck und entscheidet selbst ob es angezeigt oder gemeldet wird.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

ENROLLMENT = "enrollment"


class SyncError(Exception):
    """Basis-Exception des Enrolment-Syncs"""


class DirectoryError(SyncError):
    """Ein Schreib- oder Lesezugriff auf Moodle ist fehlgeschlagen"""


class ClaimFormatError(SyncError):
    """Die uebergebenen Claims haben nicht das erwartete Format"""


@dataclass
class SyncOutcome:
    """Ergebnis eines Sync-Laufs fuer einen Benutzer"""
    errors: Dict[str, List[str]] = field(default_factory=lambda: defaultdict(list))
    aborted: bool = False
    terminal_error: Optional[str] = None
    enrolled: int = 0
    unenrolled: int = 0
    groups_created: int = 0
    groups_assigned: int = 0
    groups_unassigned: int = 0

    def add_error(self, message: str, category: str = ENROLLMENT):
        """
        Haengt eine Fehlermeldung an

        Args:
            message: Lesbare Fehlermeldung
            category: Kategorie (z.B. 'enrollment')
        """
        self.errors[category].append(message)

    def mark_aborted(self, message: str, category: str = ENROLLMENT):
        """Markiert den Lauf als abgebrochen und speichert den Grund"""
        self.add_error(message, category)
        self.aborted = True
        self.terminal_error = message

    @property
    def has_errors(self) -> bool:
        return any(self.errors.values())

    def get_errors(self, category: str = ENROLLMENT) -> List[str]:
        return list(self.errors.get(category, []))

    def to_dict(self) -> Dict[str, Any]:
        """
        Gibt das Ergebnis als serialisierbares Dictionary zurueck

        Returns:
            Dictionary mit Fehlern, Abbruch-Status und Zaehlern
        """
        return {
            'errors': {k: list(v) for k, v in self.errors.items() if v},
            'aborted': self.aborted,
            'terminal_error': self.terminal_error,
            'changes': {
                'enrolled': self.enrolled,
                'unenrolled': self.unenrolled,
                'groups_created': self.groups_created,
                'groups_assigned': self.groups_assigned,
                'groups_unassigned': self.groups_unassigned,
            }
        }
