class AttendanceError(Exception):
    """Base exception for the attendance system."""


class CameraError(AttendanceError):
    """Raised when webcam access fails."""


class NoDeviceFoundError(CameraError):
    """Raised when no video input device is available."""


class CameraPermissionError(CameraError):
    """Raised when the operating system refuses access to the camera."""


class SurfaceNotFoundError(CameraError):
    """Raised when no render surface appeared within the retry window."""


class CameraInitTimeoutError(CameraError):
    """Raised when a bound stream never delivered its first frame."""


class FaceEngineError(AttendanceError):
    """Raised when face detection or embedding generation fails."""


class NotInitializedError(FaceEngineError):
    """Raised when the face models have not finished loading."""


class DatabaseError(AttendanceError):
    """Raised when database operations fail."""


class StorageUnavailableError(DatabaseError):
    """Raised when the descriptor store cannot be opened or used."""


class AttendanceApiError(AttendanceError):
    """Raised when the attendance backend rejects or cannot be reached."""


class AttendanceRejectedError(AttendanceApiError):
    """Raised when the attendance backend answers with an error status."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code >= 500 or self.status_code in (408, 429)
