"""
Audit Log - Schreibt Enrolment-Aenderungen zeilenweise in eine Datei

Format (kompatibel zum bisherigen enrol_saml Log):
    Mon Oct 19 14:03:22  2026 [client 10.0.0.1] [info] alice enrolled in course CS101 with role student
"""

import os
import re
import logging
from collections import deque
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%a %b %d %H:%M:%S  %Y'

LINE_PATTERN = re.compile(
    r'^(?P<timestamp>\w{3} \w{3} \d{2} \d{2}:\d{2}:\d{2}  \d{4}) '
    r'\[client (?P<client>[^\]]*)\] '
    r'\[(?P<level>\w+)\] '
    r'(?P<message>.*)$'
)


class AuditLog:
    """
    Append-only Audit-Log fuer den Enrolment-Sync

    Ohne konfigurierte Log-Datei ist jeder Aufruf ein No-Op.
    Schreibfehler werden nicht abgefangen (OSError geht an den Aufrufer).
    """

    def __init__(self, logfile: str = "", data_root: str = "/srv/data"):
        """
        Initialisiert das Audit-Log

        Args:
            logfile: Absoluter Pfad oder Pfad relativ zu data_root
            data_root: Basisverzeichnis fuer relative Pfade
        """
        self.logfile = logfile or ""
        self.data_root = data_root

    @property
    def enabled(self) -> bool:
        return bool(self.logfile)

    @property
    def destination(self) -> Optional[str]:
        """Aufgeloester Pfad der Log-Datei"""
        if not self.logfile:
            return None
        if self.logfile.startswith('/'):
            return self.logfile
        return os.path.join(self.data_root, self.logfile)

    @staticmethod
    def decorate(message: str, level: str = "error", remote_addr: str = "-",
                 now: datetime = None) -> str:
        """Formatiert eine Log-Zeile inklusive Zeilenende"""
        timestamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
        return f"{timestamp} [client {remote_addr}] [{level}] {message}\r\n"

    def write(self, message: str, level: str = "error", remote_addr: str = "-"):
        """
        Haengt eine Zeile an die Log-Datei an

        Args:
            message: Nachricht
            level: 'info' oder 'error'
            remote_addr: Client-Adresse des Requests
        """
        destination = self.destination
        if not destination:
            return
        with open(destination, 'a', encoding='utf-8', newline='') as f:
            f.write(self.decorate(message, level, remote_addr))

    def write_best_effort(self, message: str, level: str = "error", remote_addr: str = "-"):
        """Wie write(), aber ein Schreibfehler wird nur als Warnung geloggt"""
        try:
            self.write(message, level, remote_addr)
        except OSError as e:
            logger.warning(f"Could not write audit log {self.destination}: {e}")

    def read_tail(self, lines: int = 100, level: str = "all") -> List[Dict[str, Any]]:
        """
        Liest die letzten Eintraege des Audit-Logs

        Args:
            lines: Anzahl der Zeilen
            level: 'all' oder ein Level-Filter ('info', 'error')

        Returns:
            Liste der geparsten Eintraege (aelteste zuerst)
        """
        destination = self.destination
        if not destination or not os.path.exists(destination):
            return []

        try:
            with open(destination, 'r', encoding='utf-8', newline='') as f:
                tail = deque(f, maxlen=lines)
        except OSError as e:
            logger.error(f"Error reading audit log {destination}: {e}")
            return []

        entries = []
        for raw in tail:
            line = raw.rstrip('\r\n')
            if not line:
                continue
            match = LINE_PATTERN.match(line)
            if match:
                entry = match.groupdict()
            else:
                entry = {"timestamp": None, "client": None, "level": "unknown", "message": line}
            if level == "all" or entry["level"].lower() == level.lower():
                entries.append(entry)
        return entries
