"""
Gabarits HTML des e-mails transactionnels.
Chaque fonction renvoie le corps complet (mise en page de base + contenu).
Tout texte saisi par un utilisateur passe par `esc`.
"""
from __future__ import annotations

from datetime import date, datetime
from html import escape

THEME = {
    "primary": "#0ea5e9",
    "primary_dark": "#0284c7",
    "background": "#f9fafb",
    "text": "#333333",
    "muted": "#6b7280",
    "border": "#e5e7eb",
    "success": "#10b981",
    "warning": "#f59e0b",
    "danger": "#ef4444",
    "accent": "#8b5cf6",
}

_WEEKDAYS = ("lundi", "mardi", "mercredi", "jeudi", "vendredi", "samedi", "dimanche")
_MONTHS = (
    "janvier", "février", "mars", "avril", "mai", "juin",
    "juillet", "août", "septembre", "octobre", "novembre", "décembre",
)


def esc(value: object) -> str:
    return escape(str(value)) if value is not None else ""


def format_date_long(day: date) -> str:
    """lundi 3 mars 2025"""
    return f"{_WEEKDAYS[day.weekday()]} {day.day} {_MONTHS[day.month - 1]} {day.year}"


def format_date_short(day: date) -> str:
    return day.strftime("%d/%m/%Y")


def format_datetime(value: datetime) -> str:
    return value.strftime("%d/%m/%Y %H:%M")


def detail_item(label: str, value: str) -> str:
    return f'<div class="detail-item"><span class="detail-label">{label} :</span> {value}</div>'


def info_box(title: str | None, body: str, color: str | None = None) -> str:
    heading = ""
    if title:
        heading = f'<h3 style="margin-top: 0; color: {color or THEME["primary"]};">{title}</h3>'
    return f'<div class="info-box">{heading}{body}</div>'


def base_template(app_name: str, frontend_url: str, header: str, content: str, first_name: str) -> str:
    site_label = frontend_url.replace("https://", "").replace("http://", "")
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{esc(app_name)} - {header}</title>
  <style>
    body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6;
           color: {THEME['text']}; max-width: 600px; margin: 0 auto; padding: 20px; background-color: {THEME['background']}; }}
    .container {{ background: white; border-radius: 12px; overflow: hidden; border: 1px solid {THEME['border']}; }}
    .header {{ background: linear-gradient(135deg, {THEME['primary']}, {THEME['primary_dark']}); color: white;
              padding: 40px 30px; text-align: center; }}
    .header h1 {{ margin: 0; font-size: 28px; font-weight: 700; }}
    .content {{ padding: 40px 30px; }}
    .footer {{ text-align: center; margin-top: 40px; padding-top: 25px; border-top: 1px solid {THEME['border']};
              color: {THEME['muted']}; font-size: 13px; }}
    .info-box {{ background: #f8fafc; padding: 25px; border-radius: 8px; border-left: 4px solid {THEME['primary']}; margin: 25px 0; }}
    .button {{ display: inline-block; padding: 14px 28px; background: {THEME['primary_dark']}; color: white;
              text-decoration: none; border-radius: 6px; font-weight: 600; }}
    .detail-item {{ margin-bottom: 10px; }}
    .detail-label {{ font-weight: 600; color: #374151; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="header">
      <h1>{esc(app_name)}</h1>
      <p>{header}</p>
    </div>
    <div class="content">
      <p>Bonjour <strong>{esc(first_name)}</strong>,</p>
      {content}
      <div class="footer">
        <p>Cordialement,<br><strong>L'équipe {esc(app_name)}</strong></p>
        <p><a href="{esc(frontend_url)}" style="color: {THEME['primary_dark']}; text-decoration: none;">{esc(site_label)}</a></p>
      </div>
    </div>
  </div>
</body>
</html>
"""


# ============================================
# Rendez-vous
# ============================================


def appointment_confirmation_content(day: date, time: str, location: str) -> str:
    box = info_box(
        "Détails du rendez-vous",
        detail_item("Date", format_date_long(day))
        + detail_item("Heure", esc(time))
        + detail_item("Lieu", esc(location))
        + detail_item("Statut", f'<span style="color: {THEME["success"]}; font-weight: 600;">Confirmé</span>'),
    )
    return f"<p>Votre rendez-vous a été confirmé avec succès.</p>{box}<p>Nous vous attendons avec impatience.</p>"


def appointment_reminder_content(time: str, location: str) -> str:
    box = info_box(
        "Votre rendez-vous aujourd'hui",
        detail_item("Heure", esc(time)) + detail_item("Lieu", esc(location)),
    )
    return f"<p>Rappel : vous avez un rendez-vous aujourd'hui.</p>{box}<p>Nous sommes impatients de vous rencontrer.</p>"


def appointment_confirmed_content(day: date, time: str) -> str:
    box = info_box(
        "Rendez-vous confirmé",
        detail_item("Date", format_date_short(day)) + detail_item("Heure", esc(time)),
    )
    return f"<p>Votre rendez-vous a été confirmé.</p>{box}"


def appointment_cancelled_content(day: date, time: str, cancelled_by: str, reason: str | None, frontend_url: str) -> str:
    body = detail_item("Date prévue", format_date_short(day)) + detail_item("Heure prévue", esc(time))
    if reason:
        body += detail_item("Raison", esc(reason))
    return (
        f"<p>Votre rendez-vous a été annulé {cancelled_by}.</p>"
        + info_box("Rendez-vous annulé", body)
        + f'<div style="text-align: center; margin-top: 30px;"><a href="{esc(frontend_url)}" class="button">'
        "Reprogrammer un rendez-vous</a></div>"
    )


def appointment_completed_content(favorable: bool) -> str:
    if favorable:
        box = info_box(
            "Avis favorable",
            "<p>Votre dossier a reçu un avis favorable.</p><p>Votre procédure d'admission a été lancée.</p>",
            THEME["success"],
        )
        return f"<p>Votre rendez-vous s'est déroulé avec succès.</p>{box}<p>Félicitations pour cette première étape réussie.</p>"
    box = info_box(
        "Compte rendu",
        "<p>Votre dossier n'a pas reçu un avis favorable pour le programme envisagé.</p>",
        THEME["danger"],
    )
    return (
        f"<p>Votre rendez-vous est maintenant terminé.</p>{box}"
        "<p>Notre équipe reste à votre disposition pour étudier d'autres alternatives.</p>"
    )


def appointment_pending_content() -> str:
    box = info_box(
        "En attente de confirmation",
        "<p>Nous traiterons votre demande dans les meilleurs délais.</p>",
        THEME["warning"],
    )
    return f"<p>Votre demande de rendez-vous est en attente de confirmation.</p>{box}"


def appointment_expired_content(day: date, time: str, frontend_url: str) -> str:
    box = info_box(
        "Rendez-vous expiré",
        detail_item("Date prévue", format_date_short(day)) + detail_item("Heure prévue", esc(time)),
        THEME["warning"],
    )
    return (
        f"<p>Votre rendez-vous n'a pas eu lieu et a expiré.</p>{box}"
        f'<div style="text-align: center; margin-top: 30px;"><a href="{esc(frontend_url)}" class="button">'
        "Prendre un nouveau rendez-vous</a></div>"
    )


# ============================================
# Procédures
# ============================================


def _progress_bar(percent: int) -> str:
    return (
        f'<div style="background: {THEME["border"]}; height: 8px; border-radius: 4px; margin: 5px 0; overflow: hidden;">'
        f'<div style="background: {THEME["primary"]}; height: 100%; width: {percent}%;"></div></div>'
        f'<span style="font-weight: 600;">{percent}%</span>'
    )


def procedure_progress_content(percent: int, current_step: str, status: str, destination: str) -> str:
    box = info_box(
        "Avancement",
        detail_item("Progression", _progress_bar(percent))
        + detail_item("Étape en cours", esc(current_step))
        + detail_item("Statut", esc(status))
        + detail_item("Destination", esc(destination)),
    )
    return f"<p>Votre procédure d'admission avance.</p>{box}<p>Notre équipe travaille activement sur votre dossier.</p>"


def procedure_completed_content(status: str, destination: str, filiere: str) -> str:
    box = info_box(
        "Procédure finalisée",
        detail_item("Statut", f'<span style="color: {THEME["success"]}; font-weight: 600;">{esc(status)}</span>')
        + detail_item("Destination", esc(destination))
        + detail_item("Filière", esc(filiere)),
        THEME["success"],
    )
    return (
        f"<p>Votre procédure d'admission est maintenant terminée avec succès.</p>{box}"
        "<p>Félicitations ! Vous avez franchi toutes les étapes nécessaires.</p>"
    )


def procedure_rejected_content(status: str, destination: str, reason: str | None) -> str:
    body = (
        detail_item("Statut", f'<span style="color: {THEME["danger"]}; font-weight: 600;">{esc(status)}</span>')
        + detail_item("Destination", esc(destination))
    )
    if reason:
        body += detail_item("Raison", esc(reason))
    return (
        f"<p>Votre procédure d'admission a été rejetée.</p>{info_box('Décision', body, THEME['danger'])}"
        "<p>Notre équipe reste à votre disposition pour discuter des alternatives.</p>"
    )


def procedure_created_content(destination: str, filiere: str, appointment_day: date | None) -> str:
    body = detail_item("Destination", esc(destination)) + detail_item("Filière", esc(filiere))
    if appointment_day:
        body += detail_item("Date du rendez-vous", format_date_short(appointment_day))
    return (
        "<p>Suite à l'avis favorable de votre rendez-vous, votre procédure d'admission a été lancée.</p>"
        + info_box("Votre procédure est lancée", body, THEME["success"])
        + "<p>Notre équipe va désormais vous accompagner pas à pas.</p>"
    )


def procedure_cancelled_content(destination: str, reason: str | None) -> str:
    body = detail_item("Destination", esc(destination))
    if reason:
        body += detail_item("Raison", esc(reason))
    return (
        f"<p>Votre procédure d'admission a été annulée.</p>{info_box('Annulation', body, THEME['danger'])}"
        "<p>Notre équipe reste à votre disposition pour toute question.</p>"
    )


# ============================================
# Contact
# ============================================


def contact_reply_content(reply: str) -> str:
    box = info_box(None, f'<div style="white-space: pre-line; line-height: 1.7;">{esc(reply)}</div>')
    return f"<p>Nous vous répondons à votre message :</p>{box}<p>Nous espérons que cette réponse correspond à vos attentes.</p>"


def contact_admin_content(first_name: str, last_name: str, email: str, message: str, received_at: datetime) -> str:
    box = info_box(
        "Informations",
        detail_item("Nom", f"{esc(first_name)} {esc(last_name)}".strip())
        + detail_item("Email", esc(email))
        + detail_item("Date", format_datetime(received_at)),
    )
    quoted = (
        f'<div style="background: #f8fafc; padding: 20px; border-radius: 8px; margin: 20px 0; '
        f'border-left: 4px solid {THEME["accent"]};">'
        f'<h4 style="margin-top: 0; color: {THEME["accent"]};">Message :</h4>'
        f'<div style="white-space: pre-line; line-height: 1.7;">{esc(message)}</div></div>'
    )
    return f"<p>Nouveau message de contact reçu :</p>{box}{quoted}<p>Pour répondre : répondre directement à cet email.</p>"


def contact_confirmation_content() -> str:
    box = info_box(
        None,
        "<p>Votre demande a bien été enregistrée et sera traitée dans les plus brefs délais.</p>"
        + detail_item("Délai de réponse", "48 heures ouvrables maximum"),
    )
    return f"<p>Nous accusons réception de votre message.</p>{box}<p>Un membre de notre équipe vous contactera rapidement.</p>"
