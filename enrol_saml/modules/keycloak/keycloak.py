"""
Keycloak API Integration

Basierend auf python-keycloak fuer Admin-Operationen. Liefert die
Benutzer- und Gruppendaten aus denen der ClaimMapper Claims baut.
"""

import os
import logging
from typing import List, Dict, Optional

from keycloak import KeycloakAdmin
from keycloak.exceptions import KeycloakError

logger = logging.getLogger(__name__)


class KeycloakClient:
    """
    Keycloak Admin Client fuer Benutzer- und Gruppen-Lookups

    Verwendet python-keycloak fuer die API-Kommunikation.
    """

    def __init__(
        self,
        server_url: str = None,
        realm: str = None,
        client_id: str = None,
        client_secret: str = None,
        verify_ssl: bool = True,
        admin: KeycloakAdmin = None
    ):
        """
        Initialisiert den Keycloak Client

        Args:
            server_url: Keycloak Server URL (z.B. https://keycloak.example.com/auth/)
            realm: Keycloak Realm Name
            client_id: Client ID fuer Service Account
            client_secret: Client Secret
            verify_ssl: SSL-Zertifikate pruefen
            admin: Bereits verbundener KeycloakAdmin (optional)
        """
        self.server_url = server_url or os.getenv(
            "KEYCLOAK_SERVER_URL",
            "https://keycloak.example.com/auth/"
        )
        self.realm = realm or os.getenv("KEYCLOAK_REALM", "edulution")
        self.client_id = client_id or os.getenv("KEYCLOAK_CLIENT_ID", "enrol-saml-sync")
        self.client_secret = client_secret or os.getenv("KEYCLOAK_SECRET_KEY", "")
        self.verify_ssl = verify_ssl

        self._admin: Optional[KeycloakAdmin] = admin
        if self._admin is None:
            self._connect()

    def _connect(self):
        """Stellt Verbindung zu Keycloak her"""
        try:
            self._admin = KeycloakAdmin(
                server_url=self.server_url,
                realm_name=self.realm,
                client_id=self.client_id,
                client_secret_key=self.client_secret,
                verify=self.verify_ssl
            )
            logger.info(f"Connected to Keycloak: {self.server_url} (realm: {self.realm})")
        except KeycloakError as e:
            logger.error(f"Failed to connect to Keycloak: {e}")
            raise

    def reconnect(self):
        """Stellt Verbindung neu her (z.B. nach Token-Ablauf)"""
        self._connect()

    # ==================== USER OPERATIONS ====================

    def get_user_by_username(self, username: str) -> Optional[Dict]:
        """
        Sucht einen Benutzer nach Username

        Args:
            username: Username

        Returns:
            User-Dictionary oder None
        """
        try:
            users = self._admin.get_users({"username": username, "exact": True})
            return users[0] if users else None
        except KeycloakError as e:
            logger.error(f"Error searching user {username}: {e}")
            return None

    def get_user_groups(self, user_id: str) -> List[Dict]:
        """
        Laedt alle Gruppen eines Benutzers

        Args:
            user_id: Keycloak User-ID

        Returns:
            Liste der Gruppen-Dictionaries
        """
        try:
            return self._admin.get_user_groups(user_id)
        except KeycloakError as e:
            logger.error(f"Error loading groups for user {user_id}: {e}")
            return []

    # ==================== GROUP OPERATIONS ====================

    def get_group(self, group_id: str) -> Optional[Dict]:
        """
        Laedt eine einzelne Gruppe

        Args:
            group_id: Keycloak Group-ID

        Returns:
            Group-Dictionary oder None
        """
        try:
            return self._admin.get_group(group_id)
        except KeycloakError as e:
            logger.error(f"Error loading group {group_id}: {e}")
            return None

    def get_group_attributes(self, group_id: str) -> Dict[str, List[str]]:
        """
        Laedt die Attribute einer Gruppe

        Args:
            group_id: Keycloak Group-ID

        Returns:
            Dictionary der Attribute
        """
        group = self.get_group(group_id)
        if group:
            return group.get('attributes', {})
        return {}

    # ==================== UTILITY METHODS ====================

    def check_connection(self) -> bool:
        """
        Prueft die Verbindung zu Keycloak

        Returns:
            True wenn Verbindung OK
        """
        try:
            self._admin.get_server_info()
            return True
        except KeycloakError as e:
            logger.error(f"Keycloak connection check failed: {e}")
            return False
