"""
Services package - Business logic layer
"""
from amazonia.services.geo_service import geo_service
from amazonia.services.code_service import code_generator
from amazonia.services.ledger_service import ledger_service
from amazonia.services.notification_service import notification_service
from amazonia.services.checkin_service import checkin_service
from amazonia.services.redemption_service import redemption_service
from amazonia.services.quiz_service import quiz_service

__all__ = [
    "geo_service",
    "code_generator",
    "ledger_service",
    "notification_service",
    "checkin_service",
    "redemption_service",
    "quiz_service"
]
