"""会话凭证（轮换 token）管理。"""

from chat_core.auth.credential_manager import SessionCredentialManager

__all__ = ["SessionCredentialManager"]
