from .confirmation import PickupConfirmation, PickupConfirmationService, PickupEventPublisher

__all__ = ["PickupConfirmation", "PickupConfirmationService", "PickupEventPublisher"]
