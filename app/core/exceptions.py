"""Orchestration error taxonomy shared by the deployment workers and adapters."""

from typing import Optional


class OrchestrationError(Exception):
    """Base exception for provisioning and application delivery failures."""

    def __init__(self, message: str, suggestion: Optional[str] = None):
        super().__init__(message)
        self.suggestion = suggestion


class ToolExecutionError(OrchestrationError):
    """Raised when Terraform, Docker or a remote script exits non-zero."""

    def __init__(self, message: str, output: str = "", exit_code: Optional[int] = None):
        super().__init__(message)
        self.output = output
        self.exit_code = exit_code


class NetworkError(OrchestrationError):
    """Raised on clone or API timeouts and connectivity failures."""

    pass


class CredentialError(OrchestrationError):
    """Raised when stored credentials cannot be decrypted or are rejected by the provider."""

    pass


class UnreachableTargetError(OrchestrationError):
    """Raised when an instance is not registered with SSM or its agent is offline."""

    pass


class ConfigurationError(OrchestrationError):
    """Raised when a record or request is missing fields required by a stage."""

    pass


class DriftError(OrchestrationError):
    """Raised when a drift probe itself fails (distinct from the resource being absent)."""

    pass


CREDENTIAL_ERROR_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "InvalidSignatureException",
    "SignatureDoesNotMatch",
    "AuthFailure",
    "ExpiredToken",
    "ExpiredTokenException",
}


def aws_error(message: str, error: Exception) -> OrchestrationError:
    """Map a botocore exception onto the taxonomy. Rejected credentials become CredentialError."""
    response = getattr(error, "response", None)
    if isinstance(response, dict):
        code = response.get("Error", {}).get("Code", "")
        if code in CREDENTIAL_ERROR_CODES:
            return CredentialError(f"{message}: {code}")
        return ToolExecutionError(f"{message}: {str(error)}", output=str(error))
    return NetworkError(f"{message}: {str(error)}")
