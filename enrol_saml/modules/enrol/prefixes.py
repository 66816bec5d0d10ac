"""
Gruppen-Praefixe - entscheidet welche Kursgruppen vom Sync verwaltet werden
"""

from typing import Iterable, Optional, Tuple, Union


def parse_prefixes(value: Union[str, Iterable[str], None]) -> Tuple[str, ...]:
    """
    Wandelt die GROUP_PREFIX-Einstellung in ein Tuple von Praefixen

    Args:
        value: Komma-separierter String oder Liste

    Returns:
        Tuple der nicht-leeren Praefixe
    """
    if not value:
        return ()
    if isinstance(value, str):
        value = value.split(',')
    return tuple(p.strip() for p in value if p and p.strip())


def group_matches_prefixes(groupname: Optional[str], prefixes: Optional[Iterable[str]]) -> bool:
    """
    Prueft ob ein Gruppenname von diesem Sync verwaltet wird

    Ohne Praefixe ist jede Gruppe verwaltet. Sonst muss der Name
    (ohne Beachtung der Gross-/Kleinschreibung) mit einem Praefix beginnen.

    Args:
        groupname: Name der Kursgruppe
        prefixes: Konfigurierte Praefixe

    Returns:
        True wenn die Gruppe verwaltet wird
    """
    prefixes = tuple(prefixes or ())
    if not prefixes:
        return True
    if groupname is None:
        return False

    lowered = groupname.lower()
    return any(lowered.startswith(prefix.lower()) for prefix in prefixes)
