import base64
import binascii
import re
from datetime import datetime, timezone

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import settings
from .errors import PersistenceError
from .logging_config import get_logger

logger = get_logger(__name__)

s3_client = boto3.client("s3", region_name=settings.AWS_REGION)

DATA_URI_PATTERN = re.compile(r"^data:image/(?P<ext>jpeg|jpg|png|gif);base64,(?P<data>.+)$", re.DOTALL)


def is_data_uri(image: str) -> bool:
    return image.startswith("data:")


def decode_data_uri(image: str, max_bytes: int = None):
    """
    Decode a data:image/...;base64 string

    Returns:
        (extension, raw bytes)

    Raises:
        ValueError: unsupported type, bad base64 or too large
    """
    max_bytes = max_bytes or settings.MAX_IMAGE_BYTES
    match = DATA_URI_PATTERN.match(image)
    if not match:
        raise ValueError("image must be a jpeg, png or gif data URI")
    try:
        content = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("image is not valid base64") from e
    if len(content) > max_bytes:
        raise ValueError(f"image exceeds {max_bytes // 1024}KB")
    ext = "jpg" if match.group("ext") == "jpeg" else match.group("ext")
    return ext, content


def save_field_image(content: bytes, ext: str, submission_key: str, index: int) -> str:
    """
    Upload a field image to S3

    Returns:
        s3://bucket/key reference stored on the field

    Example S3 key: field-images/year=2025/month=10/SUB_ab12CD34_20251014_153000/field_0.png
    """
    now = datetime.now(timezone.utc)
    s3_key = f"field-images/year={now.year}/month={now.month:02d}/{submission_key}/field_{index}.{ext}"
    content_type = "image/jpeg" if ext == "jpg" else f"image/{ext}"

    try:
        s3_client.put_object(
            Bucket=settings.AWS_BUCKET_NAME,
            Key=s3_key,
            Body=content,
            ContentType=content_type,
        )
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Failed to save field image to S3: {str(e)}", exc_info=True)
        raise PersistenceError(f"Failed to store field image: {e}") from e

    logger.info(f"Field image saved to S3: s3://{settings.AWS_BUCKET_NAME}/{s3_key}")
    return f"s3://{settings.AWS_BUCKET_NAME}/{s3_key}"
