import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "tastioDB"
    firebase_project_id: Optional[str] = None
    jwt_secret: str = "change-this-secret"
    jwt_audience: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            database_name=os.getenv("DATABASE_NAME", cls.database_name),
            firebase_project_id=os.getenv("FIREBASE_PROJECT_ID") or None,
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            jwt_audience=os.getenv("JWT_AUDIENCE") or None,
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            port=int(os.getenv("PORT", cls.port)),
        )
