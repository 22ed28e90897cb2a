"""S3 upload planning for operators with direct AWS credentials."""

import math
import time

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_s3 import S3Client

from cachao_upload.config import Settings
from cachao_upload.services.errors import ApiError
from cachao_upload.services.transfer import (
    CompletedPart,
    DirectPlan,
    MultipartPlan,
    UploadFile,
)
from cachao_upload.services.utils import sanitize_filename

KEY_PREFIX = "videos/"
DEFAULT_PART_SIZE = 100 * 1024 * 1024
LARGE_FILE_BYTES = 100 * 1024 * 1024
SHORT_URL_EXPIRY = 3600
LONG_URL_EXPIRY = 14400


def create_s3_client(profile: str, region: str = "eu-west-1") -> S3Client:
    """Create an S3 client using the specified AWS profile.

    Args:
        profile: AWS profile name from ~/.aws/credentials or ~/.aws/config
        region: AWS region

    Returns:
        Configured S3 client
    """
    session = boto3.Session(profile_name=profile, region_name=region)
    client: S3Client = session.client("s3")
    return client


def build_object_key(filename: str, timestamp_ms: int | None = None) -> str:
    """Build a key like ``videos/1718000000000-My_clip.mov``."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{KEY_PREFIX}{timestamp_ms}-{sanitize_filename(filename)}"


class S3Planner:
    """Issues presigned upload plans straight from a bucket.

    Same contract as the backend planner, but no video record is created, so
    plans never carry a record id.
    """

    def __init__(
        self, client: S3Client, bucket: str, part_size: int = DEFAULT_PART_SIZE
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.part_size = part_size

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3Planner":
        client = create_s3_client(settings.aws_profile, settings.aws_region)
        return cls(client, settings.s3_bucket, part_size=settings.part_size)

    def plan_direct(self, file: UploadFile, event_id: str, album_id: str) -> DirectPlan:
        key = build_object_key(file.name)
        expires_in = LONG_URL_EXPIRY if file.size > LARGE_FILE_BYTES else SHORT_URL_EXPIRY
        try:
            url = self.client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": file.mime_type},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise ApiError(f"Failed to presign upload: {e}") from e
        return DirectPlan(put_url=url, object_key=key)

    def plan_multipart(self, file: UploadFile, event_id: str, album_id: str) -> MultipartPlan:
        key = build_object_key(file.name)
        total_parts = max(1, math.ceil(file.size / self.part_size))
        try:
            created = self.client.create_multipart_upload(
                Bucket=self.bucket, Key=key, ContentType=file.mime_type
            )
            upload_id = created["UploadId"]
            part_urls = [
                self.client.generate_presigned_url(
                    "upload_part",
                    Params={
                        "Bucket": self.bucket,
                        "Key": key,
                        "UploadId": upload_id,
                        "PartNumber": part_number,
                    },
                    ExpiresIn=SHORT_URL_EXPIRY,
                )
                for part_number in range(1, total_parts + 1)
            ]
        except (BotoCoreError, ClientError) as e:
            raise ApiError(f"Failed to start multipart upload: {e}") from e

        return MultipartPlan(
            upload_id=upload_id,
            object_key=key,
            part_size=self.part_size,
            part_urls=part_urls,
        )

    def complete_multipart(self, plan: MultipartPlan, parts: list[CompletedPart]) -> str:
        ordered = sorted(parts, key=lambda p: p.part_number)
        try:
            self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=plan.object_key,
                UploadId=plan.upload_id,
                MultipartUpload={
                    "Parts": [{"PartNumber": p.part_number, "ETag": p.etag} for p in ordered]
                },
            )
        except (BotoCoreError, ClientError) as e:
            status = None
            if isinstance(e, ClientError):
                status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            raise ApiError(f"Failed to complete multipart upload: {e}", status_code=status) from e
        return plan.object_key
