#!/usr/bin/env python3
"""
Enrol SAML Sync - Synchronisiert Kurseinschreibungen aus IdP-Claims

Gleicht fuer einen Benutzer die Kurseinschreibungen und Kursgruppen in
Moodle mit den Rollen-/Kurs-Claims des Identity Providers ab.

Usage:
    enrol-saml-sync --username alice --claims claims.json
    enrol-saml-sync --username alice --from-keycloak
    enrol-saml-sync --username alice --claims claims.json --dry-run

Environment Variables:
    SUPPORT_COURSES          - 'nosupport' deaktiviert den Enrolment-Sync
    IGNORE_INACTIVE_COURSES  - Bei '1' werden inaktive Kurse nicht ausgeschrieben
    MOODLE_COURSE_FIELD_ID   - Kursfeld fuer die Kurs-IDs aus den Claims (default: shortname)
    GROUP_PREFIX             - Komma-separierte Praefixe der verwalteten Gruppen
    LOGFILE                  - Audit-Log (absolut oder relativ zu DATA_ROOT)
    ... (siehe ConfigurationStorage fuer alle Optionen)
"""

import sys
import json
import argparse
import logging
from typing import Optional

from enrol_saml.modules.audit.AuditLog import AuditLog
from enrol_saml.modules.enrol.GroupReconciler import GroupReconciler
from enrol_saml.modules.enrol.InstanceManager import InstanceManager
from enrol_saml.modules.models.ClaimSet import ClaimSet
from enrol_saml.modules.models.ConfigurationStorage import ConfigurationStorage, EnrolSettings
from enrol_saml.modules.models.DirectoryRecords import User
from enrol_saml.modules.models.SyncOutcome import ClaimFormatError, SyncOutcome
from enrol_saml.modules.moodle.DirectoryStore import DirectoryStore

logger = logging.getLogger(__name__)

DEFAULT_COURSE_FIELD = "shortname"


class EnrolmentSync:
    """
    Enrolment-Abgleich fuer einen Benutzer

    Ablauf pro Rolle aus den Claims:
    1. Rolle in Moodle aufloesen
    2. Inaktive Kurse ausschreiben (ausser sie sind auch aktiv)
    3. Aktive Kurse einschreiben und Kursgruppe abgleichen
    """

    def __init__(self, directory: DirectoryStore, settings: EnrolSettings, audit: AuditLog = None):
        """
        Initialisiert den Sync

        Args:
            directory: Zugriff auf Kurse, Rollen, Gruppen und Einschreibungen
            settings: Read-only Einstellungen fuer den Lauf
            audit: Audit-Log (default aus settings.logfile)
        """
        self.directory = directory
        self.settings = settings
        self.audit = audit or AuditLog(settings.logfile, settings.data_root)
        self.instances = InstanceManager(directory, settings)
        self.groups = GroupReconciler(directory, self.audit, settings)

    def sync_user_enrolments(self, user: User, claims: ClaimSet) -> SyncOutcome:
        """
        Gleicht die Einschreibungen eines Benutzers mit seinen Claims ab

        Wirft keine Exceptions: unerwartete Fehler brechen die restlichen
        Rollen ab und landen im Ergebnis. Die Claims werden immer geleert.

        Args:
            user: Moodle-Benutzer
            claims: Claims des aktuellen Logins (werden geleert)

        Returns:
            SyncOutcome mit Fehlern und Zaehlern
        """
        outcome = SyncOutcome()

        try:
            if not self.settings.courses_supported:
                logger.debug("Course support disabled, skipping enrolment sync")
                return outcome

            field = self.settings.moodle_course_field_id or DEFAULT_COURSE_FIELD
            try:
                for role in claims.mapped_roles:
                    self._sync_role(user, claims, role, field, outcome)
            except Exception as e:
                outcome.mark_aborted(str(e))
                logger.error(f"Enrol process for user {user.username} stopped: {e}", exc_info=True)
                self.audit.write_best_effort(
                    f"Enrol process for user {user.username} stopped.{e}", "error", claims.remote_addr
                )
            return outcome
        finally:
            claims.clear()

    def _sync_role(self, user: User, claims: ClaimSet, role: str, field: str, outcome: SyncOutcome):
        """Verarbeitet eine Rolle aus den Claims"""
        moodle_role = self.directory.get_role(role)
        if moodle_role is None:
            outcome.add_error(f"role not found: {role}")
            logger.warning(f"Role {role} not found in Moodle")
            return

        active = claims.active_courses(role)
        new_course_ids = list(active.keys())
        del_course_ids = list(claims.inactive_courses(role).keys())

        if not self.settings.ignore_inactive_courses:
            for course_id in del_course_ids:
                # Aktive Kurse haben Vorrang
                if course_id in new_course_ids:
                    continue
                self._unenrol(user, moodle_role, course_id, field, claims.remote_addr, outcome)

        for course_id in new_course_ids:
            course = self.directory.get_course(field, course_id)
            if course is None:
                logger.debug(f"Course {field}={course_id} not found, skipping")
                continue
            if course.id == self.directory.site_course_id:
                continue

            instance = self.instances.get_or_create_instance(course)
            if instance is None:
                outcome.add_error(f"could not create instance for role {role}, course {course.id}")
                self.audit.write_best_effort(
                    f"error enrolling {user.username} with role {role} on course {course.shortname}",
                    "error", claims.remote_addr
                )
                continue

            contextid = self.directory.get_course_context_id(course.id)
            if not self.directory.user_has_role_assignment(user.id, moodle_role.id, contextid):
                # Letzter Parameter (status): 0 aktiv, 1 suspendiert
                self.directory.enrol_user(instance, user.id, moodle_role.id, 0, 0, 0)
                outcome.enrolled += 1
                logger.info(f"Enrolled {user.username} in course {course.shortname} as {role}")
                self.audit.write_best_effort(
                    f"{user.username} enrolled in course {course.shortname} with role {role}",
                    "info", claims.remote_addr
                )

            self.groups.assign_group(
                active.get(course_id), course, user,
                self.settings.group_prefixes, outcome, claims.remote_addr
            )

    def _unenrol(self, user: User, moodle_role, course_id: str, field: str,
                 remote_addr: str, outcome: SyncOutcome):
        """Schreibt den Benutzer aus einem inaktiven Kurs aus"""
        course = self.directory.get_course(field, course_id)
        if course is None or course.id == self.directory.site_course_id:
            return

        contextid = self.directory.get_course_context_id(course.id)
        if not self.directory.user_has_role_assignment(user.id, moodle_role.id, contextid):
            return

        instance = self.instances.get_or_create_instance(course)
        if instance is None:
            return

        self.directory.unenrol_user(instance, user.id)
        outcome.unenrolled += 1
        logger.info(f"Unenrolled {user.username} from course {course.shortname}")
        self.audit.write_best_effort(
            f"{user.username} unenrolled in course {course.shortname}", "info", remote_addr
        )


def build_directory(config: ConfigurationStorage) -> DirectoryStore:
    """Erstellt den moosh-basierten Directory Store aus der Konfiguration"""
    from enrol_saml.modules.moodle.MoodleDirectory import MoodleDirectory
    from enrol_saml.modules.moodle.moosh import MooshWrapper

    moosh = MooshWrapper(
        moodle_path=config.get("MOODLE_PATH"),
        timeout=config.get_int("MOOSH_TIMEOUT", 60),
        dry_run=config.get_bool("DRY_RUN")
    )
    return MoodleDirectory(moosh, dbtype=config.get("MOODLE_DBTYPE", "mariadb"))


def load_claims(path: str, remote_addr: str = "-") -> ClaimSet:
    """
    Laedt ein ClaimSet aus einer JSON-Datei ('-' fuer stdin)

    Raises:
        ClaimFormatError: Bei ungueltigem JSON oder falscher Struktur
    """
    try:
        if path == '-':
            data = json.load(sys.stdin)
        else:
            with open(path, 'r') as f:
                data = json.load(f)
    except json.JSONDecodeError as e:
        raise ClaimFormatError(f"Invalid claims JSON: {e}") from e
    return ClaimSet.from_dict(data, remote_addr=remote_addr)


def run_for_user(config: ConfigurationStorage, username: str, claims: ClaimSet,
                 directory: Optional[DirectoryStore] = None) -> SyncOutcome:
    """
    Fuehrt den Sync fuer einen Benutzer aus

    Args:
        config: Konfiguration
        username: Moodle-Username
        claims: Claims des Benutzers
        directory: Optionaler Directory Store (sonst moosh)

    Returns:
        SyncOutcome
    """
    directory = directory or build_directory(config)
    user = directory.get_user(username)
    if user is None:
        claims.clear()
        outcome = SyncOutcome()
        outcome.add_error(f"user not found: {username}")
        logger.warning(f"User {username} not found in Moodle")
        return outcome

    sync = EnrolmentSync(directory, config.enrol_settings())
    return sync.sync_user_enrolments(user, claims)


def main():
    """Hauptfunktion - CLI Interface"""
    parser = argparse.ArgumentParser(
        description='Enrol SAML Sync - Synchronizes course enrolments and groups from IdP claims',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  enrol-saml-sync --username alice --claims claims.json
  enrol-saml-sync --username alice --claims - < claims.json
  enrol-saml-sync --username alice --from-keycloak --dry-run
        """
    )

    parser.add_argument(
        '--username',
        required=True,
        help='Moodle username to synchronize'
    )

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        '--claims',
        type=str,
        help="Path to a JSON claim set ('-' for stdin)"
    )
    source.add_argument(
        '--from-keycloak',
        action='store_true',
        help='Build the claim set from the user\'s Keycloak groups'
    )

    parser.add_argument(
        '--remote-addr',
        default='-',
        help='Client address written to the audit log'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show what would be changed without making changes'
    )

    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    parser.add_argument(
        '--config',
        type=str,
        help='Path to override config file'
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Konfiguration erstellen
    config = ConfigurationStorage(override_file=args.config) if args.config else ConfigurationStorage()
    log_level = config.get("LOG_LEVEL", "INFO")
    logging.getLogger().setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # CLI-Argumente ueberschreiben Config
    if args.dry_run:
        config.set("DRY_RUN", True)
        logger.info("=== DRY RUN MODE - No changes will be made ===")

    if args.debug:
        config.set("LOG_LEVEL", "DEBUG")
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        if args.from_keycloak:
            from enrol_saml.modules.keycloak.ClaimMapper import ClaimMapper
            claims = ClaimMapper.from_config(config).claims_for_username(
                args.username, remote_addr=args.remote_addr
            )
        else:
            claims = load_claims(args.claims, remote_addr=args.remote_addr)
    except ClaimFormatError as e:
        logger.error(f"Invalid claims: {e}")
        sys.exit(2)
    except OSError as e:
        logger.error(f"Could not read claims: {e}")
        sys.exit(2)

    outcome = run_for_user(config, args.username, claims)
    print(json.dumps(outcome.to_dict(), indent=2))

    if outcome.has_errors:
        logger.warning(f"Sync for {args.username} finished with errors")
        sys.exit(1)
    logger.info(f"Sync for {args.username} finished successfully")
    sys.exit(0)


if __name__ == "__main__":
    main()
