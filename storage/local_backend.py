"""Local implementation of the audit API on top of AuditStore.

Mirrors the server's validations so offline runs fail the same way the
remote API would: edits of finalized audits and invalid answers are 400,
unknown ids are 404.
"""
from uuid import uuid4
from audit.errors import BackendRejected, InvalidAnswer
from audit.logger import log_event
from audit.models import AuditItem, StoredEvidence, StandardAnswer, TemplateItem
from audit.responses import validate_answer
from audit.scoring import item_score, final_score
from storage.audit_store import AuditStore

EXTRA_COLUMNS = {
    "observacao": "observacao",
    "descricaoIa": "descricao_ia",
    "descricaoNaoConformidade": "descricao_nao_conformidade",
    "referenciaLegal": "referencia_legal",
    "planoAcaoSugerido": "plano_acao_sugerido"
}

class LocalAuditBackend:
    def __init__(self, store: AuditStore = None, *, url_prefix="local://fotos"):
        self.store = store or AuditStore()
        self.url_prefix = url_prefix

    def register_template(self, template_id, name, items, activity_type="serviço de alimentação"):
        self.store.add_template(template_id, name, activity_type, items)

    def register_unit(self, unit_id, name):
        self.store.add_unit(unit_id, name)

    def _audit_row(self, session_id):
        row = self.store.get_audit(session_id)
        if row is None:
            raise BackendRejected(404, "Auditoria não encontrada")
        return row

    def _editable_audit(self, session_id, action="editar"):
        row = self._audit_row(session_id)
        if row["status"] == "finalizada":
            raise BackendRejected(400, f"Não é possível {action} uma auditoria finalizada. "
                                       "Reabra a auditoria para fazer alterações.")
        return row

    def _item_row(self, session_id, item_id):
        row = self.store.get_item(session_id, item_id)
        if row is None:
            raise BackendRejected(404, "Item não encontrado")
        return row

    def _item_payload(self, row) -> dict:
        return {"id": row["id"],
                "templateItem": self.store.template_item(row["template_item_id"]),
                "resposta": row["resposta"],
                "observacao": row["observacao"],
                "descricaoIa": row["descricao_ia"],
                "descricaoNaoConformidade": row["descricao_nao_conformidade"],
                "referenciaLegal": row["referencia_legal"],
                "planoAcaoSugerido": row["plano_acao_sugerido"],
                "pontuacao": row["pontuacao"] or 0,
                "fotos": [{"id": photo["id"], "url": photo["url"],
                           "analiseIa": photo["analise_ia"]}
                          for photo in self.store.get_photos(row["id"])]}

    def _audit_payload(self, row) -> dict:
        template = self.store.get_template(row["template_id"])
        return {"id": row["id"],
                "status": row["status"],
                "dataInicio": row["data_inicio"],
                "dataFim": row["data_fim"],
                "latitudeInicio": row["latitude_inicio"],
                "longitudeInicio": row["longitude_inicio"],
                "latitudeFim": row["latitude_fim"],
                "longitudeFim": row["longitude_fim"],
                "templateId": row["template_id"],
                "unidadeId": row["unidade_id"],
                "template": {"id": template["id"], "nome": template["nome"],
                             "tipoAtividade": template["tipo_atividade"]} if template else None,
                "pontuacaoTotal": row["pontuacao_total"],
                "observacoesGerais": row["observacoes_gerais"],
                "itens": [self._item_payload(item) for item in self.store.get_items(row["id"])]}

    async def start_audit(self, unit_id, template_id, latitude=None, longitude=None) -> dict:
        if self.store.get_unit(unit_id) is None:
            raise BackendRejected(404, "Unidade não encontrada")
        if self.store.get_template(template_id) is None:
            raise BackendRejected(404, "Template não encontrado")

        session_id = uuid4().hex
        self.store.create_audit(session_id, unit_id, template_id, latitude, longitude)
        log_event("INFO", "local_audit_created", session_id=session_id, node="local_backend",
                  meta={"unit_id": unit_id, "template_id": template_id})
        return await self.get_audit(session_id)

    async def get_audit(self, session_id) -> dict:
        return self._audit_payload(self._audit_row(session_id))

    async def answer_item(self, session_id, item_id, answer, extras=None) -> dict:
        self._editable_audit(session_id)
        row = self._item_row(session_id, item_id)
        template_item = TemplateItem.model_validate(self.store.template_item(row["template_item_id"]))

        try:
            parsed = validate_answer(template_item, answer)
        except InvalidAnswer as e:
            raise BackendRejected(400, str(e)) from e

        fields = {"resposta": answer, "pontuacao": item_score(template_item, parsed)}
        for key, value in (extras or {}).items():
            if key in EXTRA_COLUMNS and value is not None:
                fields[EXTRA_COLUMNS[key]] = value

        self.store.update_item(item_id, fields)
        return self._item_payload(self._item_row(session_id, item_id))

    async def add_photo(self, session_id, item_id, image: bytes, mime_type="image/jpeg") -> StoredEvidence:
        self._editable_audit(session_id, action="adicionar fotos em")
        self._item_row(session_id, item_id)

        photo_id = uuid4().hex
        url = f"{self.url_prefix}/{session_id}/{item_id}/{photo_id}.jpg"
        self.store.add_photo(photo_id, item_id, url, mime_type, image)
        return StoredEvidence(id=photo_id, url=url)

    async def remove_photo(self, session_id, item_id, photo_id):
        self._editable_audit(session_id, action="remover fotos de")
        if self.store.get_photo(item_id, photo_id) is None:
            raise BackendRejected(404, "Foto não encontrada")
        self.store.delete_photo(photo_id)

    async def update_photo_analysis(self, session_id, item_id, photo_id, analysis: str):
        self._audit_row(session_id)
        if self.store.get_photo(item_id, photo_id) is None:
            raise BackendRejected(404, "Foto não encontrada")
        self.store.update_photo_analysis(photo_id, analysis)

    async def finalize_audit(self, session_id, general_observations=None,
                             latitude=None, longitude=None) -> dict:
        row = self._audit_row(session_id)
        if row["status"] == "finalizada":
            raise BackendRejected(400, "Auditoria já finalizada")

        items = [AuditItem.model_validate(self._item_payload(item))
                 for item in self.store.get_items(session_id)]
        missing = [item for item in items
                   if item.mandatory and item.answer == StandardAnswer.NAO_AVALIADO]
        if missing:
            raise BackendRejected(400, f"Existem {len(missing)} itens obrigatórios não avaliados")

        score = final_score(items)
        self.store.finalize_audit(session_id, score, general_observations, latitude, longitude)
        log_event("INFO", "local_audit_finalized", session_id=session_id, node="local_backend",
                  meta={"score": score})
        return await self.get_audit(session_id)

    async def reopen_audit(self, session_id) -> dict:
        row = self._audit_row(session_id)
        if row["status"] != "finalizada":
            raise BackendRejected(400, "Apenas auditorias finalizadas podem ser reabertas")
        self.store.reopen_audit(session_id)
        return await self.get_audit(session_id)

    async def list_non_conforming(self, session_id) -> list:
        row = self._audit_row(session_id)
        return [item for item in self._audit_payload(row)["itens"]
                if item["resposta"] == StandardAnswer.NAO_CONFORME.value]
