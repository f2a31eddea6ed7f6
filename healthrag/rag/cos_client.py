import ibm_boto3
from ibm_botocore.client import Config

from healthrag.config import Settings
from healthrag.exceptions import ConfigError, PersistenceError
from healthrag.rag.parser import decode_export

ENDPOINT_HELP = (
    "Common endpoint formats:\n"
    "- Regional: https://s3.{region}.cloud-object-storage.appdomain.cloud\n"
    "- Cross-region: https://s3.cloud-object-storage.appdomain.cloud\n"
    "- Private: https://s3.{region}.private.cloud-object-storage.appdomain.cloud\n\n"
    "Please verify your COS_ENDPOINT environment variable."
)


def split_uri(uri: str) -> tuple[str, str]:
    """Split ``s3://bucket/key`` into (bucket, key)."""
    if not uri.startswith("s3://") or "/" not in uri[len("s3://"):]:
        raise PersistenceError(f"Invalid object URI: {uri!r} (expected s3://bucket/key)")
    bucket, key = uri[len("s3://"):].split("/", 1)
    return bucket, key


class COSClient:
    def __init__(self, settings: Settings, client=None):
        self.settings = settings
        if not settings.cos_bucket:
            raise ConfigError("Missing COS configuration. Please set COS_BUCKET.")
        if client is not None:
            self.mode = "injected"
            self.client = client
            return
        if not settings.cos_endpoint or not settings.cos_instance_crn:
            raise ConfigError(
                "Missing COS configuration. Please set COS_ENDPOINT, COS_BUCKET, and COS_INSTANCE_CRN."
            )

        # Normalize endpoint: strip quotes, remove trailing slash, ensure https
        endpoint = settings.cos_endpoint.strip().strip('"').strip("'").rstrip("/")
        if not endpoint.startswith(("http://", "https://")):
            endpoint = f"https://{endpoint}"
        elif endpoint.startswith("http://"):
            endpoint = endpoint.replace("http://", "https://", 1)

        # Prefer HMAC if keys are present; otherwise use IAM
        if settings.cos_hmac_access_key_id and settings.cos_hmac_secret_access_key:
            self.mode = "hmac"
            kwargs = dict(
                aws_access_key_id=settings.cos_hmac_access_key_id,
                aws_secret_access_key=settings.cos_hmac_secret_access_key,
                config=Config(signature_version="s3v4"),
            )
        else:
            self.mode = "iam"
            if not settings.cos_api_key:
                raise ConfigError(
                    "Missing IBM Cloud API key. Please set COS_API_KEY or IBM_CLOUD_API_KEY."
                )
            kwargs = dict(
                ibm_api_key_id=settings.cos_api_key,
                ibm_service_instance_id=settings.cos_instance_crn,
                ibm_auth_endpoint=settings.cos_auth_endpoint,
                config=Config(signature_version="oauth"),
            )

        try:
            self.client = ibm_boto3.client("s3", endpoint_url=endpoint, **kwargs)
        except Exception as e:
            error_msg = str(e)
            if "endpoint" in error_msg.lower():
                raise ConfigError(
                    f"Invalid COS endpoint format: {endpoint}\n\n{ENDPOINT_HELP}\n"
                    f"Original error: {error_msg}"
                ) from e
            raise ConfigError(
                f"Failed to initialize COS client with {self.mode.upper()} authentication: {e}\n"
                "Please check your network connection and COS credentials."
            ) from e

    def upload_bytes(
        self, key: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> str:
        try:
            self.client.put_object(
                Bucket=self.settings.cos_bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except Exception as e:
            raise PersistenceError(f"Failed to upload {key}: {e}", document_id=key) from e
        return f"s3://{self.settings.cos_bucket}/{key}"

    def download_text(self, uri: str, encoding: str = "utf-8") -> str:
        bucket, key = split_uri(uri)
        try:
            obj = self.client.get_object(Bucket=bucket, Key=key)
            data = obj["Body"].read()
        except Exception as e:
            raise PersistenceError(f"Failed to download {uri}: {e}", document_id=key) from e
        return decode_export(data, uri, encoding)

    def delete(self, uri: str) -> None:
        bucket, key = split_uri(uri)
        try:
            self.client.delete_object(Bucket=bucket, Key=key)
        except Exception as e:
            raise PersistenceError(f"Failed to delete {uri}: {e}", document_id=key) from e
