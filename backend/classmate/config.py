"""Application settings and validation."""

import os

_DEV_JWT_SECRET = "change_me_for_prod"
_DEV_PEPPER = "dev-pepper"
_DEV_ENCRYPTION_KEY = "5f" * 32
_DEV_IV_EMAIL = "a1" * 16
_DEV_IV_PHONE = "b2" * 16
_DEV_IV_GENERAL = "c3" * 16


class Settings:
    ENV: str
    DATABASE_URL: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    SESSION_HOURS: int
    REFRESH_DAYS: int
    MAX_FAILED_LOGINS: int
    LOCKOUT_MINUTES: int
    RESET_TOKEN_MINUTES: int
    ENCRYPTION_KEY: str
    FIXED_IV_EMAIL: str
    FIXED_IV_PHONE: str
    FIXED_IV_GENERAL: str
    HASH_PEPPER: str
    SECURE_COOKIES: bool
    ALLOW_DEV_CORS: bool
    LOG_LEVEL: str
    INSTITUTION_NAME: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./classmate.db")
        self.JWT_SECRET = os.getenv("JWT_SECRET", _DEV_JWT_SECRET)
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.SESSION_HOURS = int(os.getenv("SESSION_HOURS", "8"))
        self.REFRESH_DAYS = int(os.getenv("REFRESH_DAYS", "7"))
        self.MAX_FAILED_LOGINS = int(os.getenv("MAX_FAILED_LOGINS", "5"))
        self.LOCKOUT_MINUTES = int(os.getenv("LOCKOUT_MINUTES", "30"))
        self.RESET_TOKEN_MINUTES = int(os.getenv("RESET_TOKEN_MINUTES", "60"))
        # hex encoded: 32 byte key, 16 byte IVs
        self.ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", _DEV_ENCRYPTION_KEY)
        self.FIXED_IV_EMAIL = os.getenv("FIXED_IV_EMAIL", _DEV_IV_EMAIL)
        self.FIXED_IV_PHONE = os.getenv("FIXED_IV_PHONE", _DEV_IV_PHONE)
        self.FIXED_IV_GENERAL = os.getenv("FIXED_IV_GENERAL", _DEV_IV_GENERAL)
        self.HASH_PEPPER = os.getenv("HASH_PEPPER", _DEV_PEPPER)
        self.SECURE_COOKIES = os.getenv("SECURE_COOKIES", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        self.INSTITUTION_NAME = os.getenv(
            "INSTITUTION_NAME", "Michael Okpara University of Agriculture, Umudike"
        )
        self._validate()

    def _validate(self):
        self._check_hex("ENCRYPTION_KEY", 32)
        for name in ("FIXED_IV_EMAIL", "FIXED_IV_PHONE", "FIXED_IV_GENERAL"):
            self._check_hex(name, 16)
        if self.ENV == "dev":
            return
        if self.JWT_SECRET == _DEV_JWT_SECRET:
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.ENCRYPTION_KEY == _DEV_ENCRYPTION_KEY or self.HASH_PEPPER == _DEV_PEPPER:
            raise RuntimeError("ENCRYPTION_KEY and HASH_PEPPER must be set in non-dev environments")

    def _check_hex(self, name: str, expected_bytes: int):
        raw = getattr(self, name)
        try:
            size = len(bytes.fromhex(raw))
        except ValueError:
            raise RuntimeError(f"{name} must be hex encoded")
        if size != expected_bytes:
            raise RuntimeError(
                f"{name} must be {expected_bytes} bytes in hex ({expected_bytes * 2} chars), got {size} bytes"
            )


settings = Settings()
