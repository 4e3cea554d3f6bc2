"""
core/messages.py -- Error message redaction and user-facing message tables.

map_error_message() is the single point through which every internal failure
passes before it reaches a client-visible surface (JSON body, HTML banner).
It only ever returns static strings from the tables below -- never the input
text, a stack trace, or a framework/ORM name.

Matching order:
  1. Exact match on the internal message (framework English identifiers).
  2. Keyword match (case-insensitive) for rate-limit, network and server
     classes of errors.
  3. Generic fallback. The raw message is logged server-side, once.

The framework's messages are free text, so an upstream rewording silently
falls through to the fallback. Keying on AuthError.code would be sturdier.

Layer rule: core/ is the kernel. No imports from api/, web/, or auth/.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

logger = logging.getLogger("authgate.messages")

UNKNOWN_ERROR = "Une erreur inconnue est survenue."
GENERIC_ERROR = "Une erreur est survenue. Veuillez réessayer."

INVALID_CREDENTIALS = "Email ou mot de passe incorrect."
INVALID_OR_EXPIRED_CODE = "Code de vérification invalide ou expiré."
RATE_LIMITED = "Trop de tentatives. Veuillez patienter quelques minutes."
NETWORK_ERROR = "Erreur de connexion. Vérifiez votre connexion internet."
SERVER_ERROR = "Erreur serveur temporaire. Veuillez réessayer dans quelques instants."

_EXACT: dict[str, str] = {
    # Authentication
    "Invalid email or password": INVALID_CREDENTIALS,
    "Invalid credentials": INVALID_CREDENTIALS,
    "Invalid username or password": "Nom d'utilisateur ou mot de passe incorrect.",
    "Email not verified": "Veuillez vérifier votre adresse email avant de vous connecter.",
    "Account banned": "Ce compte est banni.",
    "User not found": "Utilisateur introuvable.",
    "Authentication required": "Authentification requise.",
    "Forbidden": "Accès refusé.",
    "Not Found": "Page introuvable.",
    "Method Not Allowed": "Méthode non autorisée.",
    # Registration
    "Email already exists": "Cet email est déjà utilisé. Connectez-vous ou vérifiez vos emails.",
    "Sign-up attempt for existing email": "Cet email est déjà utilisé. Connectez-vous ou vérifiez vos emails.",
    "Username already exists": "Ce nom d'utilisateur est déjà pris. Choisissez-en un autre.",
    "Password too short": "Mot de passe trop court (minimum 8 caractères).",
    "Invalid email": "Adresse email invalide.",
    "Invalid username": "Nom d'utilisateur invalide.",
    "Weak password": "Le mot de passe ne respecte pas les règles de sécurité.",
    "Missing required field": "Un champ requis est manquant.",
    "Invalid request body": "Requête invalide.",
    "Registration disabled": "Les inscriptions sont actuellement fermées.",
    # OTP / verification
    "Invalid OTP": "Code de vérification invalide.",
    "Invalid verification code": "Code de vérification invalide.",
    "Invalid or expired OTP": INVALID_OR_EXPIRED_CODE,
    "OTP expired": "Code de vérification expiré. Demandez un nouveau code.",
    "Verification code expired": "Code de vérification expiré. Demandez un nouveau code.",
    "Too many OTP attempts": "Trop de tentatives. Veuillez patienter avant de réessayer.",
    "Invalid OTP type": "Type de code invalide.",
    "Unable to send verification code": "Impossible d'envoyer le code de vérification. Veuillez réessayer.",
    "You can only send a verification email to an unverified email": (
        "Impossible de renvoyer l'email : cette adresse est déjà vérifiée ou n'existe pas."
    ),
    # Password reset
    "Password reset token expired": "Le lien de réinitialisation a expiré. Demandez un nouveau lien.",
    "Invalid password reset token": "Lien de réinitialisation invalide.",
    # Organizations
    "Organization not found": "Organisation introuvable.",
    "Organization already exists": "Cette organisation existe déjà.",
    "Invalid invitation": "Invitation invalide ou expirée.",
    "User already in organization": "Vous êtes déjà membre de cette organisation.",
    "Not an organization admin": "Seuls les administrateurs de l'organisation peuvent inviter des membres.",
}

# Keyword classes, checked in order against the lower-cased message.
_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("rate limit", "too many requests"), RATE_LIMITED),
    (("network", "fetch"), NETWORK_ERROR),
    (("server", "500"), SERVER_ERROR),
)


def _extract_message(error: Any) -> Optional[str]:
    if error is None:
        return None
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        message = error.get("message")
    else:
        message = getattr(error, "message", None)
    return message if isinstance(message, str) else None


def map_error_message(error: Any) -> str:
    """Translate an internal error into a safe, localized message.

    Accepts a plain string, a mapping with a "message" key, or any object with
    a .message attribute (e.g. auth.backend.AuthError). None or an empty
    message yields UNKNOWN_ERROR without logging.
    """
    message = _extract_message(error)
    if not message:
        return UNKNOWN_ERROR

    mapped = _EXACT.get(message)
    if mapped is not None:
        return mapped

    lowered = message.lower()
    for keywords, text in _KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return text

    logger.warning("Unmapped error message: %r", message)
    return GENERIC_ERROR


# ---------------------------------------------------------------------------
# Success / loading tables
# ---------------------------------------------------------------------------

_SUCCESS: dict[str, str] = {
    "signup": "Compte créé avec succès !",
    "signup-verify": "Compte créé ! Un email de vérification a été envoyé.",
    "signin": "Connexion réussie !",
    "signout": "Déconnexion réussie.",
    "otp-sent": "Code de vérification envoyé par email.",
    "password-reset": "Mot de passe réinitialisé avec succès !",
    "email-verified": "Adresse email vérifiée avec succès !",
    "organization-created": "Organisation créée avec succès !",
    "invitation-sent": "Invitation envoyée avec succès !",
    "invitation-accepted": "Invitation acceptée. Bienvenue dans l'organisation !",
    "profile-updated": "Profil mis à jour avec succès !",
}

_LOADING: dict[str, str] = {
    "signin": "Connexion...",
    "signup": "Création du compte...",
    "otp-sending": "Envoi du code...",
    "otp-verifying": "Vérification...",
    "password-resetting": "Réinitialisation...",
    "saving": "Enregistrement...",
    "sending": "Envoi...",
    "loading": "Chargement...",
}


def get_success_message(kind: str) -> str:
    return _SUCCESS.get(kind, "Opération réussie !")


def get_loading_message(kind: str) -> str:
    return _LOADING.get(kind, "Traitement...")
