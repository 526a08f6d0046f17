"""Validation utilities for identifiers and uploads."""

import os
import re
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId

from app.core.v1.exceptions import ValidationException
from app.settings.v1.general import SETTINGS


class CaseValidator:
    """Validator for case-related input."""

    @staticmethod
    def validate_object_id(value: str, label: str = "Case ID") -> str:
        """
        Validate a MongoDB ObjectId in its 24 hex character form.

        Args:
            value: Identifier to validate
            label: Name used in error messages

        Returns:
            str: Validated identifier

        Raises:
            ValidationException: If the identifier format is invalid
        """
        if not value or not isinstance(value, str):
            raise ValidationException(f"{label} cannot be empty")

        value = value.strip()

        if not re.match(r'^[a-f0-9]{24}$', value):
            raise ValidationException(
                f"Invalid {label.lower()} format: '{value}'. "
                f"Expected 24 hexadecimal characters (MongoDB ObjectId)"
            )

        try:
            ObjectId(value)
        except InvalidId as err:
            raise ValidationException(f"Invalid {label.lower()}: '{value}'. {err}") from err

        return value

    @staticmethod
    def validate_upload(filename: Optional[str], size: int) -> str:
        """
        Validate the name and size of an uploaded document.

        Args:
            filename: Original filename
            size: Content size in bytes

        Returns:
            str: Lower-case file extension

        Raises:
            ValidationException: If the file is empty, too large or of a
                type that cannot be liquidated
        """
        if not filename or not filename.strip():
            raise ValidationException("Filename cannot be empty")

        extension = os.path.splitext(filename)[1].lstrip(".").lower()
        if extension not in SETTINGS.ALLOWED_FILE_EXTENSIONS:
            raise ValidationException(
                f"File extension '{extension}' not allowed. "
                f"Allowed extensions: {', '.join(SETTINGS.ALLOWED_FILE_EXTENSIONS)}"
            )

        if size <= 0:
            raise ValidationException(f"File '{filename}' is empty")

        if size > SETTINGS.MAX_FILE_SIZE:
            raise ValidationException(
                f"File size {size} exceeds maximum allowed size {SETTINGS.MAX_FILE_SIZE} bytes"
            )

        return extension
