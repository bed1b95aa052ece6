# core/aws_client.py
"""
Centralized AWS client factory to ensure proper credential handling.
This module creates AWS clients with explicit credential configuration.
"""
import os

import boto3
from botocore.config import Config

from gateway.core.config import get_settings
from gateway.core.logger import logger


def _credential_kwargs() -> dict:
    # Get credentials from settings (which loads from .env) or environment
    settings = get_settings()
    return {
        "aws_access_key_id": settings.AWS_ACCESS_KEY_ID or os.getenv('AWS_ACCESS_KEY_ID'),
        "aws_secret_access_key": settings.AWS_SECRET_ACCESS_KEY or os.getenv('AWS_SECRET_ACCESS_KEY'),
        "aws_session_token": settings.AWS_SESSION_TOKEN or os.getenv('AWS_SESSION_TOKEN'),
    }


def get_kms_client():
    """Get KMS client with proper credentials (credential store backend)."""
    try:
        client = boto3.client(
            "kms",
            region_name=get_settings().AWS_REGION,
            config=Config(connect_timeout=5, read_timeout=10, retries={'max_attempts': 2}),
            **_credential_kwargs()
        )
        logger.info("KMS client initialized with credentials")
        return client
    except Exception as e:
        logger.error(f"Failed to initialize KMS client: {str(e)}")
        raise


def get_sqs_client():
    """Get SQS client with proper credentials."""
    try:
        client = boto3.client(
            "sqs",
            region_name=get_settings().SQS_REGION,
            **_credential_kwargs()
        )
        logger.info("SQS client initialized with credentials")
        return client
    except Exception as e:
        logger.error(f"Failed to initialize SQS client: {str(e)}")
        raise


def validate_aws_credentials() -> bool:
    """Validate that AWS credentials are properly configured."""
    creds = _credential_kwargs()

    if not creds["aws_access_key_id"] or not creds["aws_secret_access_key"]:
        logger.warning("Missing AWS credentials in both settings and environment variables")
        logger.info("AWS credentials not found. Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY in .env, "
                    "or rely on an instance/task role")
        return False

    logger.info("AWS credentials found and validated")
    return True
