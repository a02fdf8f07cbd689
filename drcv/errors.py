from fastapi import status


class UploadError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(UploadError):
    status_code = status.HTTP_400_BAD_REQUEST


class PayloadTooLarge(ValidationError):
    status_code = 413


class UploadTimeout(UploadError):
    status_code = status.HTTP_408_REQUEST_TIMEOUT


class StorageError(UploadError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
