from mediasub_core.clients.base import CallResult, OutboundClient, ProbeResult
from mediasub_core.clients.directory import DirectoryClient, DirectoryRequest
from mediasub_core.clients.mail import MailMessage, MailReceipt, MailTransportClient

__all__ = [
    "CallResult",
    "DirectoryClient",
    "DirectoryRequest",
    "MailMessage",
    "MailReceipt",
    "MailTransportClient",
    "OutboundClient",
    "ProbeResult",
]
