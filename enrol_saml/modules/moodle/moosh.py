"""
Moosh CLI Wrapper fuer Moodle-Operationen

Moosh ist ein CLI-Tool fuer Moodle-Administration.
Diese Klasse wrappet die Befehle die der Enrolment-Sync braucht:
sql-run fuer Lookups und Enrol-Tabellen, group-* fuer Kursgruppen.
"""

import subprocess
import logging
import os
import re
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

RECORD_FIELD = re.compile(r'^\s*\[(?P<key>[^\]]+)\]\s*=>\s?(?P<value>.*)$')


def sql_quote(value, backslash_escapes: bool = True) -> str:
    """
    Quotet einen Wert fuer sql-run

    Args:
        value: Wert (None, bool, int oder String)
        backslash_escapes: Bei True (MySQL/MariaDB) werden Backslashes verdoppelt,
            PostgreSQL nimmt sie woertlich
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, int):
        return str(value)
    text = str(value)
    if backslash_escapes:
        text = text.replace("\\", "\\\\")
    return "'" + text.replace("'", "''") + "'"


def parse_records(output: str) -> List[Dict[str, str]]:
    """
    Parst die print_r-Ausgabe von 'moosh sql-run'

    Args:
        output: stdout von sql-run

    Returns:
        Liste von Records (Feldname -> Wert als String)
    """
    records = []
    current = None
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith('stdClass Object'):
            current = {}
            records.append(current)
            continue
        if current is None:
            continue
        match = RECORD_FIELD.match(line)
        if match:
            current[match.group('key')] = match.group('value').strip()
    return records


class MooshWrapper:
    """
    Wrapper fuer Moosh CLI-Befehle

    Moosh-Befehle werden als Subprozesse ausgefuehrt.
    Die Klasse bietet typisierte Methoden fuer alle benoetigten Operationen.
    """

    def __init__(
        self,
        moodle_path: str = None,
        timeout: int = 60,
        dry_run: bool = False
    ):
        """
        Initialisiert den Moosh Wrapper

        Args:
            moodle_path: Pfad zur Moodle-Installation
            timeout: Timeout in Sekunden fuer Befehle
            dry_run: Bei True werden schreibende Befehle nur geloggt, nicht ausgefuehrt
        """
        self.moodle_path = moodle_path or os.getenv(
            "MOODLE_PATH",
            "/var/www/html/moodle"
        )
        self.timeout = timeout
        self.dry_run = dry_run

    def _run(
        self,
        command: str,
        *args,
        timeout: int = None,
        check_error: bool = True,
        mutating: bool = True
    ) -> subprocess.CompletedProcess:
        """
        Fuehrt einen Moosh-Befehl aus

        Args:
            command: Moosh-Befehl (z.B. 'group-create')
            *args: Befehlsargumente
            timeout: Optional eigener Timeout
            check_error: Bei True wird bei Fehler gewarnt
            mutating: Bei False wird der Befehl auch im Dry-Run ausgefuehrt

        Returns:
            CompletedProcess-Objekt
        """
        # Argumente zu Strings konvertieren und None-Werte filtern
        str_args = [str(a) for a in args if a is not None]

        cmd = ["moosh", "-n", "-p", self.moodle_path, command] + str_args

        cmd_str = ' '.join(cmd)
        logger.debug(f"Executing: {cmd_str}")

        if self.dry_run and mutating:
            logger.info(f"[DRY RUN] Would execute: {cmd_str}")
            return subprocess.CompletedProcess(
                args=cmd,
                returncode=0,
                stdout="DRY_RUN",
                stderr=""
            )

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout
            )

            if result.returncode != 0 and check_error:
                logger.warning(
                    f"Moosh command '{command}' returned {result.returncode}: "
                    f"{result.stderr.strip()}"
                )

            return result

        except subprocess.TimeoutExpired:
            logger.error(f"Moosh command '{command}' timed out after {timeout or self.timeout}s")
            return subprocess.CompletedProcess(
                args=cmd,
                returncode=-1,
                stdout="",
                stderr="Timeout"
            )
        except OSError as e:
            logger.error(f"Error executing moosh command: {e}")
            return subprocess.CompletedProcess(
                args=cmd,
                returncode=-1,
                stdout="",
                stderr=str(e)
            )

    # ==================== SQL ====================

    def sql_select(self, query: str) -> Optional[List[Dict[str, str]]]:
        """
        Fuehrt eine SELECT-Abfrage aus

        Args:
            query: SQL mit {tabelle}-Platzhaltern

        Returns:
            Liste der Records, None bei Fehler
        """
        result = self._run("sql-run", query, mutating=False)
        if result.returncode != 0:
            return None
        return parse_records(result.stdout)

    def sql_execute(self, query: str) -> bool:
        """
        Fuehrt ein schreibendes SQL-Statement aus

        Args:
            query: SQL mit {tabelle}-Platzhaltern

        Returns:
            True bei Erfolg
        """
        result = self._run("sql-run", query)
        return result.returncode == 0

    # ==================== GROUP MANAGEMENT ====================

    def group_create(
        self,
        groupname: str,
        course_id: int,
        description: str = ""
    ) -> Optional[int]:
        """
        Erstellt eine Gruppe in einem Kurs

        Args:
            groupname: Gruppenname
            course_id: Kurs-ID
            description: Beschreibung

        Returns:
            Gruppen-ID bei Erfolg, None bei Fehler
        """
        result = self._run("group-create", "--description", description, groupname, str(course_id))

        if result.returncode == 0:
            try:
                group_id = int(result.stdout.strip())
                logger.info(f"Created group {groupname} in course {course_id} with ID {group_id}")
                return group_id
            except ValueError:
                logger.warning(f"Could not parse group ID from output: {result.stdout}")
                return None
        return None

    def group_memberremove(self, group_id: int, user_id: int) -> bool:
        """
        Entfernt ein Mitglied aus einer Gruppe

        Args:
            group_id: Gruppen-ID
            user_id: User-ID

        Returns:
            True bei Erfolg
        """
        result = self._run("group-memberremove", str(group_id), str(user_id))
        success = result.returncode == 0
        if success:
            logger.debug(f"Removed {user_id} from group {group_id}")
        return success

    # ==================== CACHE ====================

    def cache_clear(self) -> bool:
        """
        Leert die Moodle-Caches (u.a. accesslib nach direkten Rollen-Aenderungen)

        Returns:
            True bei Erfolg
        """
        result = self._run("cache-clear")
        return result.returncode == 0

    # ==================== UTILITY ====================

    def check_connection(self) -> bool:
        """
        Prueft ob Moosh funktioniert

        Returns:
            True wenn Verbindung OK
        """
        result = self._run("info", check_error=False, mutating=False)
        return result.returncode == 0
