# Services are imported from their modules where needed:
# from services.auth import AuthSessionService
# from services.token_family import TokenFamilyEngine
# from services.password import PasswordHasher

__all__ = []
