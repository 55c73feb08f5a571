"""
Consolidated exception hierarchy for the forest watch system.

This module provides a unified exception hierarchy that allows for:
- Consistent error handling across all pipeline stages
- Hierarchical exception catching (e.g., catch all ImageryError)
- Clear separation of retryable and fatal errors
"""


# =============================================================================
# Base Exception
# =============================================================================

class ForestWatchError(Exception):
    """Base exception for all forest watch errors."""
    pass


class ConfigurationError(ForestWatchError):
    """Raised when configuration is invalid."""
    pass


# =============================================================================
# Imagery Errors
# =============================================================================

class ImageryError(ForestWatchError):
    """Base exception for image acquisition errors."""
    pass


class ImageUnavailable(ImageryError):
    """Raised when the provider has no imagery for the requested window."""
    pass


class ImageQualityError(ImageryError):
    """Raised when imagery is too cloudy to compare."""

    def __init__(self, message: str, cloud_cover: float = None):
        super().__init__(message)
        self.cloud_cover = cloud_cover


# =============================================================================
# Input and State Errors
# =============================================================================

class RegionNotFound(ForestWatchError):
    """Raised when a pipeline run names a region the store does not know."""

    def __init__(self, region_id: str):
        super().__init__(f"Region not found: {region_id}")
        self.region_id = region_id


class ConcurrencyConflict(ForestWatchError):
    """Raised when the per-region write lock cannot be acquired in time."""
    pass


class AlertStateError(ForestWatchError):
    """Raised on an illegal alert status transition."""
    pass


# =============================================================================
# Database Errors
# =============================================================================

class DatabaseError(ForestWatchError):
    """Base exception for database errors."""
    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when database connection fails."""
    pass


class DatabaseOperationError(DatabaseError):
    """Raised when database operations fail."""
    pass


# =============================================================================
# Notification Errors
# =============================================================================

class NotificationError(ForestWatchError):
    """Base exception for notification-related errors."""
    pass


class DispatchFailure(NotificationError):
    """Raised by a channel adapter when a single delivery fails."""

    def __init__(self, channel: str, user_id: str, reason: str):
        super().__init__(f"{channel} dispatch to {user_id} failed: {reason}")
        self.channel = channel
        self.user_id = user_id
        self.reason = reason
