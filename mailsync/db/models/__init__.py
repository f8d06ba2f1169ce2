from .email import EmailAccount, EmailMessage

__all__ = ["EmailAccount", "EmailMessage"]
