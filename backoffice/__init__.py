"""
Back office Paname Consulting.

Structure :
- db.py            : engine, sessions SQLAlchemy, pagination
- models.py        : modèles ORM et enums (rendez-vous, procédures, contact)
- calendar.py      : jours ouvrés, créneaux libres, dates réservables
- appointments.py  : cycle de vie des rendez-vous
- procedures.py    : moteur des étapes de procédure
- contacts.py      : messages de contact
- notifications.py : dispatcher des e-mails (mail.py + email_templates.py)
- jobs.py          : tâches planifiées (APScheduler)
- auth_*.py        : comptes, mots de passe, JWT
- api_main.py      : API FastAPI
- cli.py           : commandes d'exploitation
"""
