from mentor_platform.communication.client_factory import get_email_client

__all__ = ["get_email_client"]
