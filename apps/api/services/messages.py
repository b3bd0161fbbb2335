"""Localized user-facing messages (English and French)."""

from __future__ import annotations

from typing import Any, Dict, Optional

from config import settings


SUPPORTED_LOCALES = ("en", "fr")

MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "insufficient_credits": "Insufficient credits. Required: {required}, available: {balance}. Buy more credits to continue.",
        "self_excluded": "Purchases are paused until {until}. This is a self-imposed break to help you enjoy responsibly.",
        "self_excluded_indefinite": "Purchases are paused indefinitely. This is a self-imposed break to help you enjoy responsibly.",
        "daily_limit": "This purchase would exceed your daily limit of {limit}. You've spent {spent} today.",
        "weekly_limit": "This purchase would exceed your weekly limit of {limit}. You've spent {spent} this week.",
        "monthly_limit": "This purchase would exceed your monthly limit of {limit}. You've spent {spent} this month.",
        "approaching_limit": "You're approaching your {period} limit ({percent}% used)",
        "limit_set": "{period} limit set to {limit}.",
        "limit_removed": "{period} limit removed.",
        "self_exclusion_enabled": "Purchases are paused until {until}.",
        "self_exclusion_enabled_indefinite": "Purchases are paused indefinitely.",
        "self_exclusion_locked": "Your self-exclusion period cannot be ended early. {days} day(s) remaining.",
        "self_exclusion_indefinite_locked": "An indefinite self-exclusion cannot be ended from the app. Please contact support.",
        "self_exclusion_shorten": "An active self-exclusion can only be extended, not shortened.",
        "self_exclusion_ended": "Self-exclusion period has ended.",
        "self_exclusion_not_active": "No self-exclusion is active.",
        "payment_verified": "Payment confirmed. {credits} credits were added to your account.",
        "payment_failed": "Payment was not completed. No credits were added and you were not charged.",
        "payment_cancelled": "Payment was cancelled. No credits were added.",
        "payment_needs_review": "This checkout was already closed when the payment arrived. Our team has been notified and will settle it with you.",
        "payment_unknown": "We could not confirm your payment status yet. Please check your profile in a few minutes before trying to pay again.",
        "provider_not_configured": "{provider} payments are not available right now.",
        "package_not_found": "This credit package is not available.",
        "transaction_not_found": "Payment not found.",
        "daily_bonus_claimed": "Daily bonus claimed: {credits} credits ({streak} day streak).",
        "daily_bonus_already_claimed": "Daily bonus already claimed for today.",
        "referral_redeemed": "Referral code redeemed! You and {referrer} each earned {credits} credits.",
        "referral_already_redeemed": "You have already redeemed a referral code.",
        "referral_own_code": "You cannot use your own referral code.",
        "referral_invalid": "Invalid referral code.",
        "refund_already_applied": "These credits were already refunded.",
        "refund_not_eligible": "Only credit spends can be refunded.",
        "internal_error": "Something went wrong on our side. Nothing was charged; please try again.",
    },
    "fr": {
        "insufficient_credits": "Crédits insuffisants. Requis : {required}, disponibles : {balance}. Achetez des crédits pour continuer.",
        "self_excluded": "Les achats sont suspendus jusqu'au {until}. Il s'agit d'une pause que vous avez choisie pour jouer de manière responsable.",
        "self_excluded_indefinite": "Les achats sont suspendus pour une durée indéterminée. Il s'agit d'une pause que vous avez choisie.",
        "daily_limit": "Cet achat dépasserait votre limite quotidienne de {limit}. Vous avez dépensé {spent} aujourd'hui.",
        "weekly_limit": "Cet achat dépasserait votre limite hebdomadaire de {limit}. Vous avez dépensé {spent} cette semaine.",
        "monthly_limit": "Cet achat dépasserait votre limite mensuelle de {limit}. Vous avez dépensé {spent} ce mois-ci.",
        "approaching_limit": "Vous approchez de votre limite {period} ({percent} % utilisés)",
        "limit_set": "Limite {period} fixée à {limit}.",
        "limit_removed": "Limite {period} supprimée.",
        "self_exclusion_enabled": "Les achats sont suspendus jusqu'au {until}.",
        "self_exclusion_enabled_indefinite": "Les achats sont suspendus pour une durée indéterminée.",
        "self_exclusion_locked": "Votre période d'auto-exclusion ne peut pas être écourtée. {days} jour(s) restant(s).",
        "self_exclusion_indefinite_locked": "Une auto-exclusion illimitée ne peut pas être levée depuis l'application. Contactez le support.",
        "self_exclusion_shorten": "Une auto-exclusion active peut seulement être prolongée.",
        "self_exclusion_ended": "La période d'auto-exclusion est terminée.",
        "self_exclusion_not_active": "Aucune auto-exclusion n'est active.",
        "payment_verified": "Paiement confirmé. {credits} crédits ont été ajoutés à votre compte.",
        "payment_failed": "Le paiement n'a pas abouti. Aucun crédit n'a été ajouté et vous n'avez pas été débité.",
        "payment_cancelled": "Le paiement a été annulé. Aucun crédit n'a été ajouté.",
        "payment_needs_review": "Ce paiement est arrivé après la clôture de la commande. Notre équipe a été prévenue et régularisera la situation avec vous.",
        "payment_unknown": "Nous n'avons pas encore pu confirmer votre paiement. Consultez votre profil dans quelques minutes avant de payer à nouveau.",
        "provider_not_configured": "Les paiements {provider} ne sont pas disponibles pour le moment.",
        "package_not_found": "Ce pack de crédits n'est pas disponible.",
        "transaction_not_found": "Paiement introuvable.",
        "daily_bonus_claimed": "Bonus quotidien obtenu : {credits} crédits (série de {streak} jours).",
        "daily_bonus_already_claimed": "Le bonus quotidien a déjà été obtenu aujourd'hui.",
        "referral_redeemed": "Code de parrainage utilisé ! Vous et {referrer} gagnez chacun {credits} crédits.",
        "referral_already_redeemed": "Vous avez déjà utilisé un code de parrainage.",
        "referral_own_code": "Vous ne pouvez pas utiliser votre propre code de parrainage.",
        "referral_invalid": "Code de parrainage invalide.",
        "refund_already_applied": "Ces crédits ont déjà été remboursés.",
        "refund_not_eligible": "Seules les dépenses de crédits peuvent être remboursées.",
        "internal_error": "Une erreur est survenue de notre côté. Rien n'a été débité, veuillez réessayer.",
    },
}

PERIOD_NAMES = {
    "en": {"daily": "daily", "weekly": "weekly", "monthly": "monthly"},
    "fr": {"daily": "quotidienne", "weekly": "hebdomadaire", "monthly": "mensuelle"},
}


def normalize_locale(value: Optional[str]) -> str:
    """Pick a supported locale from a language tag or Accept-Language header."""
    text = str(value or "").strip().lower()
    for part in text.split(","):
        tag = part.split(";", 1)[0].strip()[:2]
        if tag in SUPPORTED_LOCALES:
            return tag
    default = str(settings.DEFAULT_LOCALE or "en").lower()
    return default if default in SUPPORTED_LOCALES else "en"


def format_money(cents: int, locale: str = "en", currency: str = "EUR") -> str:
    symbol = "€" if currency.upper() == "EUR" else f"{currency.upper()} "
    amount = f"{int(cents) / 100:.2f}"
    if locale == "fr":
        return f"{amount.replace('.', ',')} {symbol.strip()}"
    return f"{symbol}{amount}"


def period_name(period: str, locale: str = "en") -> str:
    return PERIOD_NAMES.get(locale, PERIOD_NAMES["en"]).get(period, period)


def translate(key: str, locale: Optional[str] = None, **params: Any) -> str:
    lang = normalize_locale(locale)
    template = MESSAGES.get(lang, {}).get(key) or MESSAGES["en"].get(key) or key
    try:
        return template.format(**params)
    except (KeyError, IndexError):
        return template
