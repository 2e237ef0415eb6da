"""Erreurs métier du back office.

Chaque opération de service lève l'une de ces exceptions *avant* toute
écriture : la session est annulée et rien n'est persisté. Les échecs
d'envoi d'e-mail ne sont jamais des exceptions (voir notifications.py).
"""
from __future__ import annotations

from typing import Any


class BackofficeError(Exception):
    """Base de toutes les erreurs métier."""

    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(BackofficeError):
    """Entrée mal formée (date, créneau, champ « Autre » sans précision...)."""


class ConflictError(BackofficeError):
    """Créneau pris, date complète, doublon de rendez-vous ou de procédure."""

    status_code = 409


class PermissionDeniedError(BackofficeError):
    status_code = 403


class NotFoundError(BackofficeError):
    status_code = 404


class StateError(BackofficeError):
    """Transition interdite par la machine à états."""
