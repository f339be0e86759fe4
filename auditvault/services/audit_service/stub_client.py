"""In-memory S3 client used when storage options enable stub responses.

Implements the handful of S3 client calls the object store makes, backed
by a plain key -> body map. Missing keys raise the same botocore
ClientError codes the real service returns, so the store's error
handling is exercised unchanged.
"""
import hashlib
import io
import logging
from typing import Any, Dict, MutableMapping

from botocore.exceptions import ClientError
from botocore.response import StreamingBody

logger = logging.getLogger(__name__)


def _not_found(operation: str, key: str, code: str) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"Key not found: {key}", "Key": key},
            "ResponseMetadata": {"HTTPStatusCode": 404},
        },
        operation,
    )


class InMemoryS3Client:
    """Drop-in for ``boto3.client("s3")`` limited to object CRUD and listing."""

    def __init__(self, objects: MutableMapping[str, str]):
        self.objects = objects

    def get_object(self, Bucket: str, Key: str, **kwargs) -> Dict[str, Any]:
        if Key not in self.objects:
            raise _not_found("GetObject", Key, "NoSuchKey")

        data = self.objects[Key].encode("utf-8")
        return {
            "Body": StreamingBody(io.BytesIO(data), len(data)),
            "ContentLength": len(data),
        }

    def put_object(self, Bucket: str, Key: str, Body: Any, **kwargs) -> Dict[str, Any]:
        body = Body.decode("utf-8") if isinstance(Body, bytes) else str(Body)
        self.objects[Key] = body

        logger.debug("STUB_OBJECT_PUT", extra={"key": Key, "size": len(body)})
        return {"ETag": '"%s"' % hashlib.md5(body.encode("utf-8")).hexdigest()}

    def delete_object(self, Bucket: str, Key: str, **kwargs) -> Dict[str, Any]:
        self.objects.pop(Key, None)
        return {}

    def head_object(self, Bucket: str, Key: str, **kwargs) -> Dict[str, Any]:
        if Key not in self.objects:
            raise _not_found("HeadObject", Key, "404")
        return {"ContentLength": len(self.objects[Key].encode("utf-8"))}

    def list_objects_v2(self, Bucket: str, Prefix: str = "", **kwargs) -> Dict[str, Any]:
        keys = sorted(key for key in self.objects if key.startswith(Prefix))
        return {
            "Contents": [{"Key": key} for key in keys],
            "KeyCount": len(keys),
            "IsTruncated": False,
        }
