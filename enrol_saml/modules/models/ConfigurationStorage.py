"""
Configuration Storage - Laedt und merged alle Konfigurationsquellen

Prioritaet:
1. Defaults (niedrigste)
2. Environment-Variablen
3. Override-Datei (hoechste)

Fuer einen Sync-Lauf wird daraus ein unveraenderlicher EnrolSettings-Snapshot
erzeugt, damit sich die Konfiguration waehrend des Laufs nicht aendert.
"""

import os
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from enrol_saml.modules.enrol.prefixes import parse_prefixes

logger = logging.getLogger(__name__)

# Moodle: ENROL_INSTANCE_ENABLED / ENROL_INSTANCE_DISABLED
ENROL_INSTANCE_ENABLED = 0
ENROL_INSTANCE_DISABLED = 1

SUPPORT_COURSES_NONE = "nosupport"


@dataclass(frozen=True)
class EnrolSettings:
    """Read-only Snapshot der fuer einen Sync-Lauf relevanten Einstellungen"""
    support_courses: str = "internal"
    ignore_inactive_courses: bool = False
    moodle_course_field_id: str = "shortname"
    group_prefixes: Tuple[str, ...] = ()
    logfile: str = ""
    created_group_info: str = ""
    data_root: str = "/srv/data"
    status: int = ENROL_INSTANCE_ENABLED
    enrolperiod: int = 0
    roleid: int = 5

    @property
    def courses_supported(self) -> bool:
        return self.support_courses != SUPPORT_COURSES_NONE


class ConfigurationStorage:
    """
    Zentrale Konfigurationsverwaltung fuer den SAML-Enrolment-Sync

    Laedt Konfiguration aus:
    - Interne Defaults
    - Environment-Variablen
    - Override-Datei (JSON)
    """

    def __init__(self, override_file: str = None):
        """
        Initialisiert die Konfiguration

        Args:
            override_file: Pfad zur Override-Datei (optional, default aus ENV)
        """
        self.config: Dict[str, Any] = {}
        self.override_file = override_file or os.getenv(
            "CONFIG_OVERRIDE_FILE",
            "/srv/data/enrol_saml.override.config"
        )

        self._load_defaults()
        self._load_env()
        self._load_override_file()
        self._validate()

        logger.debug(f"Configuration loaded with {len(self.config)} settings")

    def _validate(self):
        """Validiert die Konfiguration"""
        if self.config.get("SUPPORT_COURSES") == SUPPORT_COURSES_NONE:
            logger.warning("SUPPORT_COURSES is 'nosupport' - enrolments will not be synchronized")

        if not self.config.get("LOGFILE"):
            logger.debug("LOGFILE not set - audit log disabled")

        if self.config.get("ENROL_STATUS") not in (ENROL_INSTANCE_ENABLED, ENROL_INSTANCE_DISABLED):
            logger.warning(
                f"Invalid ENROL_STATUS {self.config.get('ENROL_STATUS')!r}, "
                f"falling back to enabled"
            )
            self.config["ENROL_STATUS"] = ENROL_INSTANCE_ENABLED

    def _load_defaults(self):
        """Laedt Default-Werte"""
        self.config = {
            # General
            "LOG_LEVEL": "INFO",
            "DRY_RUN": False,
            "DATA_ROOT": "/srv/data",

            # Enrolment Sync
            "SUPPORT_COURSES": "internal",  # internal, nosupport, ...
            "IGNORE_INACTIVE_COURSES": False,
            "MOODLE_COURSE_FIELD_ID": "shortname",
            "GROUP_PREFIX": "",
            "LOGFILE": "",
            "CREATED_GROUP_INFO": "",

            # Enrol instance defaults
            "ENROL_STATUS": ENROL_INSTANCE_ENABLED,
            "ENROL_PERIOD": 0,  # 0 = unbegrenzt
            "ENROL_ROLE_ID": 5,  # student

            # Keycloak Claim Source
            "ROLE_MAPPINGS": {
                "role-student": "student",
                "role-teacher": "editingteacher",
            },
            "COURSE_SYNC_ATTRIBUTE": "moodleCourse",
            "COURSE_SHORTNAME_ATTRIBUTE": "courseShortname",
            "COURSE_INACTIVE_ATTRIBUTE": "courseInactive",
            "COURSE_GROUP_ATTRIBUTE": "courseGroup",

            # Keycloak
            "KEYCLOAK_SERVER_URL": "https://keycloak.example.com/auth/",
            "KEYCLOAK_REALM": "edulution",
            "KEYCLOAK_CLIENT_ID": "enrol-saml-sync",
            "KEYCLOAK_SECRET_KEY": "",
            "KEYCLOAK_VERIFY_SSL": True,

            # Moodle
            "MOODLE_PATH": "/var/www/html/moodle",
            "MOOSH_TIMEOUT": 60,
            "MOODLE_DBTYPE": "mariadb",  # $CFG->dbtype (mariadb, mysqli, pgsql)

            # Admin API
            "ADMIN_UI_USER": "admin",
            "ADMIN_UI_PASSWORD": "",
        }

    def _load_env(self):
        """Ueberschreibt mit Environment-Variablen"""
        for key in list(self.config.keys()):
            env_value = os.getenv(key)
            if env_value is not None:
                default_value = self.config[key]
                self.config[key] = self._parse_value(env_value, type(default_value))
                logger.debug(f"Loaded {key} from environment")

        # Backward-Kompatibilitaet: KEYCLOAK_CLIENT_SECRET -> KEYCLOAK_SECRET_KEY
        if not self.config.get("KEYCLOAK_SECRET_KEY"):
            client_secret = os.getenv("KEYCLOAK_CLIENT_SECRET")
            if client_secret:
                self.config["KEYCLOAK_SECRET_KEY"] = client_secret
                logger.debug("Using KEYCLOAK_CLIENT_SECRET as KEYCLOAK_SECRET_KEY")

    def _load_override_file(self):
        """Laedt Override-Datei falls vorhanden"""
        if os.path.exists(self.override_file):
            try:
                with open(self.override_file, 'r') as f:
                    override = json.load(f)
                    self.config.update(override)
                    logger.info(f"Loaded override config from: {self.override_file}")
            except json.JSONDecodeError as e:
                logger.error(f"Error parsing override file: {e}")
            except OSError as e:
                logger.error(f"Error loading override file: {e}")

    def _parse_value(self, value: str, target_type: type) -> Any:
        """
        Parsed String-Wert in Zieltyp

        Args:
            value: String-Wert aus Environment
            target_type: Ziel-Datentyp

        Returns:
            Geparseter Wert im Zieltyp
        """
        if target_type == bool:
            return value.lower() in ('1', 'true', 'yes', 'on')
        elif target_type == int:
            try:
                return int(value)
            except ValueError:
                logger.warning(f"Could not parse '{value}' as int, returning 0")
                return 0
        elif target_type == list:
            return [v.strip() for v in value.split(',') if v.strip()]
        elif target_type == dict:
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                logger.warning(f"Could not parse '{value}' as JSON dict")
                return {}
        return value

    def get(self, key: str, default: Any = None) -> Any:
        """
        Holt einen Konfigurationswert

        Args:
            key: Konfigurationsschluessel
            default: Default-Wert falls nicht gefunden

        Returns:
            Konfigurationswert oder Default
        """
        return self.config.get(key, default)

    def get_list(self, key: str) -> List[str]:
        """
        Holt einen Listenwert aus der Konfiguration

        Args:
            key: Konfigurationsschluessel

        Returns:
            Liste von Strings
        """
        value = self.get(key, [])
        if isinstance(value, str):
            return [v.strip() for v in value.split(',') if v.strip()]
        return value if isinstance(value, list) else []

    def get_bool(self, key: str) -> bool:
        """
        Holt einen Boolean-Wert aus der Konfiguration

        Args:
            key: Konfigurationsschluessel

        Returns:
            Boolean-Wert
        """
        value = self.get(key, False)
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ('1', 'true', 'yes', 'on')
        if isinstance(value, int):
            return value != 0
        return bool(value)

    def get_int(self, key: str, default: int = 0) -> int:
        """
        Holt einen Integer-Wert aus der Konfiguration

        Args:
            key: Konfigurationsschluessel
            default: Default-Wert

        Returns:
            Integer-Wert
        """
        value = self.get(key, default)
        if isinstance(value, int):
            return value
        try:
            return int(value)
        except (ValueError, TypeError):
            return default

    def set(self, key: str, value: Any):
        """
        Setzt einen Konfigurationswert (nur zur Laufzeit)

        Args:
            key: Konfigurationsschluessel
            value: Neuer Wert
        """
        self.config[key] = value

    def reload(self):
        """Laedt die Konfiguration neu"""
        self._load_defaults()
        self._load_env()
        self._load_override_file()
        self._validate()
        logger.info("Configuration reloaded")

    def enrol_settings(self) -> EnrolSettings:
        """
        Erstellt den Snapshot fuer einen Sync-Lauf

        Returns:
            EnrolSettings mit den aktuellen Werten
        """
        return EnrolSettings(
            support_courses=self.get("SUPPORT_COURSES", "internal"),
            ignore_inactive_courses=self.get_bool("IGNORE_INACTIVE_COURSES"),
            moodle_course_field_id=self.get("MOODLE_COURSE_FIELD_ID") or "",
            group_prefixes=parse_prefixes(self.get("GROUP_PREFIX", "")),
            logfile=self.get("LOGFILE") or "",
            created_group_info=self.get("CREATED_GROUP_INFO") or "",
            data_root=self.get("DATA_ROOT", "/srv/data"),
            status=self.get_int("ENROL_STATUS", ENROL_INSTANCE_ENABLED),
            enrolperiod=self.get_int("ENROL_PERIOD", 0),
            roleid=self.get_int("ENROL_ROLE_ID", 5),
        )

    def dump(self) -> Dict[str, Any]:
        """
        Gibt die komplette Konfiguration zurueck (ohne Secrets)

        Returns:
            Konfiguration als Dictionary
        """
        safe_config = {}
        secret_keys = ["SECRET_KEY", "PASSWORD"]

        for key, value in self.config.items():
            if any(secret in key.upper() for secret in secret_keys):
                safe_config[key] = "***REDACTED***"
            else:
                safe_config[key] = value

        return safe_config
