from .models import Attachment, MailMessage, NormalizedMessage
from .normalize import normalize_message, split_addresses

__all__ = ["Attachment", "MailMessage", "NormalizedMessage", "normalize_message", "split_addresses"]
