"""
Validation module for the stack reconciler scripts.

This module provides validation functions for AWS credentials and
CloudFormation templates before any stack is touched.
"""

from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from config_parser import ConfigError, read_template
from stack_provider import StackProviderError, TemplateValidator


class ValidationError(Exception):
    """Exception raised when validation fails."""
    pass


@dataclass
class TemplateCheck:
    """Result of validating one template file."""
    path: str
    valid: bool
    error: Optional[str] = None


def validate_aws_credentials(
    account_id: Optional[str] = None,
    region: Optional[str] = None,
    sts_client=None
) -> str:
    """
    Validate that AWS credentials are available and valid.

    Args:
        account_id: Optional AWS account ID to validate against
        region: Optional AWS region to set
        sts_client: Optional boto3 STS client for testing

    Returns:
        The account ID the credentials belong to

    Raises:
        ValidationError: If credentials are invalid or unavailable
    """
    try:
        if sts_client is None:
            session = boto3.Session(region_name=region) if region else boto3.Session()
            sts_client = session.client('sts')

        identity = sts_client.get_caller_identity()
    except NoCredentialsError as e:
        raise ValidationError("AWS credentials not found. Please configure AWS credentials.") from e
    except ClientError as e:
        raise ValidationError(f"AWS credential validation failed: {str(e)}") from e
    except BotoCoreError as e:
        raise ValidationError(f"Unexpected error validating AWS credentials: {str(e)}") from e

    actual_account = identity['Account']
    if account_id and actual_account != account_id:
        raise ValidationError(
            f"AWS account mismatch: expected {account_id}, got {actual_account}"
        )

    return actual_account


def validate_template_file(validator: TemplateValidator, path: Path) -> TemplateCheck:
    """
    Validate one template file with CloudFormation.

    Args:
        validator: Provider exposing validate_template
        path: Path to the template

    Returns:
        TemplateCheck with the error message when invalid
    """
    try:
        validator.validate_template(read_template(path))
    except (ConfigError, StackProviderError) as e:
        return TemplateCheck(path=str(path), valid=False, error=str(e))
    return TemplateCheck(path=str(path), valid=True)


def validate_templates(
    validator: TemplateValidator,
    paths: List[Path],
    parallel: bool = False,
    max_workers: int = 8
) -> List[TemplateCheck]:
    """
    Validate several template files.

    In parallel mode every validation is started at once and the call
    returns only after all of them have finished.

    Args:
        validator: Provider exposing validate_template
        paths: Template paths
        parallel: Fan the validations out over a thread pool
        max_workers: Upper bound on worker threads

    Returns:
        One TemplateCheck per path, in the order given
    """
    if not parallel or len(paths) < 2:
        return [validate_template_file(validator, path) for path in paths]

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(paths)))) as executor:
        futures = [executor.submit(validate_template_file, validator, path) for path in paths]
        wait(futures)
        return [future.result() for future in futures]
