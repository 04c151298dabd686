from .token_manager import AccessToken, OAuthTokenManager

__all__ = ["AccessToken", "OAuthTokenManager"]
