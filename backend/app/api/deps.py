from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.ai_service import AIService, get_ai_backend
from app.services.email_service import EmailService
from app.services.lifecycle import RFPLifecycleManager


@lru_cache
def get_ai_service() -> AIService:
    """Built once per process; tests override this dependency with a scripted backend."""
    return AIService(get_ai_backend())


@lru_cache
def get_email_service() -> EmailService:
    return EmailService()


def get_lifecycle(
    db: Session = Depends(get_db),
    ai: AIService = Depends(get_ai_service),
    notifier: EmailService = Depends(get_email_service),
) -> RFPLifecycleManager:
    return RFPLifecycleManager(db, ai, notifier)
