from __future__ import annotations

from uuid import UUID

from sqlmodel import Session, select

from esign.core.errors import template_not_found
from esign.models.template import EsignTemplate, SignatureType, TemplateStatus
from esign.schemas.audit import AuditActor, AuditResource
from esign.schemas.template import (
    SchemaDelimiter,
    SchemaRecipient,
    TemplateCreate,
    TemplateSchemaRead,
    TemplateUpdate,
    _TemplateConfig,
)
from esign.services.audit import AuditService
from esign.services.delimiters import example_value

_CONFIG_FIELDS = (
    "signature_type",
    "delimiters",
    "recipients",
    "link_expiry",
    "mfa_config",
    "notification_config",
    "preview_mode",
    "short_link_enabled",
    "html_content",
)


class TemplateService:
    def __init__(self, session: Session, audit_service: AuditService | None = None) -> None:
        self.session = session
        self.audit_service = audit_service or AuditService(session)

    def _record(self, event_type: str, template: EsignTemplate, actor: AuditActor | None, details: dict) -> None:
        self.audit_service.record(
            event_type,
            action=event_type.split(".", 1)[1],
            company_id=template.company_id,
            actor=actor,
            resource=AuditResource(type="template", id=str(template.id)),
            details=details,
            commit=False,
        )

    def create_template(self, company_id: UUID, payload: TemplateCreate, actor: AuditActor | None = None) -> EsignTemplate:
        data = payload.model_dump(mode="json")
        data.update(status=payload.status, signature_type=payload.signature_type)
        template = EsignTemplate(company_id=company_id, **data)
        self.session.add(template)
        self.session.flush()
        self._record("template.created", template, actor, {"name": template.name, "status": template.status.value})
        self.session.commit()
        self.session.refresh(template)
        return template

    def list_templates(self, company_id: UUID, status: TemplateStatus | None = None) -> list[EsignTemplate]:
        query = select(EsignTemplate).where(
            EsignTemplate.company_id == company_id,
            EsignTemplate.is_deleted == False,  # noqa: E712
        )
        if status:
            query = query.where(EsignTemplate.status == status)
        return list(self.session.exec(query.order_by(EsignTemplate.created_at.desc())).all())

    def get_template(self, company_id: UUID, template_id: UUID) -> EsignTemplate:
        template = self.session.get(EsignTemplate, template_id)
        if template is None or template.company_id != company_id or template.is_deleted:
            raise template_not_found()
        return template

    def update_template(
        self,
        company_id: UUID,
        template_id: UUID,
        payload: TemplateUpdate,
        actor: AuditActor | None = None,
    ) -> EsignTemplate:
        template = self.get_template(company_id, template_id)
        changes = payload.model_dump(exclude_unset=True, mode="json")
        merged = {field: getattr(template, field) for field in _CONFIG_FIELDS}
        merged.update({key: value for key, value in changes.items() if key in _CONFIG_FIELDS})
        config = _TemplateConfig.model_validate(merged).model_dump(mode="json")
        for field in _CONFIG_FIELDS:
            setattr(template, field, config[field])
        template.signature_type = SignatureType(config["signature_type"])
        for field in ("name", "description"):
            if field in changes and changes[field] is not None:
                setattr(template, field, changes[field])
        template.touch()
        self.session.add(template)
        self._record("template.updated", template, actor, {"fields": sorted(changes.keys())})
        self.session.commit()
        self.session.refresh(template)
        return template

    def set_status(
        self,
        company_id: UUID,
        template_id: UUID,
        status: TemplateStatus,
        actor: AuditActor | None = None,
    ) -> EsignTemplate:
        template = self.get_template(company_id, template_id)
        if status == TemplateStatus.ACTIVE and not (template.html_content or "").strip():
            raise ValueError("Template content is required before activation")
        previous = template.status
        template.status = status
        template.touch()
        self.session.add(template)
        self._record(
            "template.updated",
            template,
            actor,
            {"status": status.value, "previous_status": previous.value},
        )
        self.session.commit()
        self.session.refresh(template)
        return template

    def schema(self, company_id: UUID, template_id: UUID) -> TemplateSchemaRead:
        template = self.get_template(company_id, template_id)
        config = _TemplateConfig.model_validate({field: getattr(template, field) for field in _CONFIG_FIELDS})
        delimiters = [
            SchemaDelimiter(
                key=item.key,
                type=item.type,
                required=item.required,
                assigned_to=item.assigned_to,
                default_value=item.default_value,
                example=example_value(item),
            )
            for item in config.delimiters
        ]
        return TemplateSchemaRead(
            template_id=template.id,
            name=template.name,
            signature_type=config.signature_type,
            preview_mode=config.preview_mode,
            mfa_enabled=config.mfa_config.enabled,
            delimiters=delimiters,
            recipients=[
                SchemaRecipient(
                    signature_order=item.signature_order,
                    label=item.label,
                    recipient_type=item.recipient_type,
                    fixed_email=str(item.email) if item.email else None,
                )
                for item in config.recipients
            ],
            payload_example={item.key: item.example for item in delimiters},
        )
