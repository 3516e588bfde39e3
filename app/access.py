from __future__ import annotations

import logging

from app.config_registry import DocumentTypeRegistry, SchemaDescriptor
from app.errors import MalformedRequest, Unauthorized
from app.security import CredentialContext

logger = logging.getLogger(__name__)


def authorize_read(descriptor: SchemaDescriptor, credential: CredentialContext) -> None:
    if descriptor.read_roles and not credential.has_any_role(descriptor.read_roles | descriptor.write_roles):
        logger.info("read denied config_id=%s subject=%s", descriptor.config_id, credential.subject)
        raise Unauthorized()


def authorize_write(descriptor: SchemaDescriptor, credential: CredentialContext) -> None:
    if not credential.has_any_role(descriptor.write_roles):
        logger.info("write denied config_id=%s subject=%s", descriptor.config_id, credential.subject)
        raise Unauthorized()


def require_operation(descriptor: SchemaDescriptor, operation: str) -> None:
    if operation not in descriptor.operations:
        raise MalformedRequest(
            f"config does not support {operation}",
            code="CONFIG_OPERATION_UNSUPPORTED",
        )


def permitted_document_types(credential: CredentialContext, registry: DocumentTypeRegistry) -> set[str]:
    """Types named in the token plus registered types whose roles admit the caller."""
    return set(credential.document_types) | registry.permitted_for(credential.roles)
