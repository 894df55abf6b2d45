import base64
import json
import re
from typing import Awaitable, Callable, Optional
from langchain_core.messages import HumanMessage
from audit.logger import ainvoke_llm, log_event
from audit.models import EvidenceAnnotation, NonConformityDraft

FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n?")

CHECKLIST_IMAGE_PROMPT = """Você é um especialista em segurança de alimentos realizando uma auditoria.

ITEM DO CHECKLIST SENDO AVALIADO:
"{question}"

CATEGORIA: {category}
TIPO DE ESTABELECIMENTO: {activity_type}

LEGISLAÇÃO RELEVANTE:
{legislation}

Analise a imagem e, considerando o item do checklist acima, forneça:
1. Se a imagem tem relação com o item avaliado
2. Uma descrição detalhada do que foi observado na imagem em relação ao item
3. Se há não conformidade, identifique qual o tipo
4. A gravidade da situação
5. Sugestões de correção
6. Referência legal aplicável

Retorne APENAS um JSON válido (sem markdown, sem backticks) com:
- imagemRelevante: true se a imagem mostra algo relacionado ao item do checklist, senão false
- descricaoIa: descrição técnica detalhada do que foi observado na imagem, relacionando ao item do checklist
- tipoNaoConformidade: tipo identificado (ex: "armazenamento inadequado", "falta de identificação", "temperatura incorreta") ou "Nenhuma identificada"
- gravidade: "baixa", "media", "alta" ou "critica"
- sugestoes: array com 2-4 sugestões de correção específicas
- referenciaLegal: citação da legislação aplicável (ex: "RDC 216/2004, Art. 4.1.3")"""

NON_CONFORMITY_PROMPT = """Você é um consultor especialista em segurança de alimentos.
Com base na descrição da não conformidade e na legislação fornecida, gere um relatório técnico.

DESCRIÇÃO DA NÃO CONFORMIDADE:
{context}

TIPO DE ESTABELECIMENTO: {activity_type}

LEGISLAÇÃO RELEVANTE:
{legislation}

Retorne APENAS um JSON válido (sem markdown, sem backticks) com:
- descricaoTecnica: descrição técnica detalhada da não conformidade
- referenciaLegal: citação da legislação aplicável (ex: "RDC 216/2004, Art. 4.1.3")
- riscoEnvolvido: tipo de risco (biológico, químico, físico, legal)
- planoAcao: objeto com:
  - acoesCorretivas: array de ações para corrigir o problema
  - acoesPreventivas: array de ações para prevenir recorrência
  - prazoSugerido: prazo recomendado (ex: "imediato", "7 dias", "30 dias")"""

NO_LEGISLATION = "Nenhuma legislação específica disponível."

def parse_json_reply(content: str) -> dict:
    """Parse a model reply that should be a JSON object, tolerating code fences.

    Raises ValueError when no object can be read."""
    cleaned = FENCE_PATTERN.sub("", content or "").replace("```", "").strip()
    parsed = json.loads(cleaned or "{}")
    if not isinstance(parsed, dict):
        raise ValueError("reply is not a JSON object")
    return parsed

def _reply_text(result) -> str:
    content = getattr(result, "content", result)
    if isinstance(content, list):
        return "".join(part.get("text", "") if isinstance(part, dict) else str(part)
                       for part in content)
    return str(content or "")

class AnnotationClient:
    """AI collaborator: checklist photo analysis and non-conformity text.

    `legislation_lookup` is an optional coroutine function returning
    legislation excerpts for a query; without it the prompts say none is
    available."""

    def __init__(self, vision_llm, text_llm=None,
                 legislation_lookup: Optional[Callable[[str], Awaitable[str]]] = None):
        self.vision_llm = vision_llm
        self.text_llm = text_llm or vision_llm
        self.legislation_lookup = legislation_lookup

    async def _legislation(self, query):
        if self.legislation_lookup is None:
            return NO_LEGISLATION
        return await self.legislation_lookup(query) or NO_LEGISLATION

    async def analyze_checklist_image(self, image: bytes, question, category,
                                      activity_type) -> EvidenceAnnotation:
        category = category or "geral"
        legislation = await self._legislation(f"{question} {category} segurança alimentos")

        prompt = CHECKLIST_IMAGE_PROMPT.format(question=question, category=category,
                                               activity_type=activity_type,
                                               legislation=legislation)
        encoded = base64.b64encode(image).decode("utf-8")
        message = HumanMessage(content=[
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{encoded}",
                                                "detail": "high"}}
        ])

        result = await ainvoke_llm(self.vision_llm, [message], node="analyze_checklist_image")
        content = _reply_text(result)

        try:
            return EvidenceAnnotation.model_validate(parse_json_reply(content))

        except ValueError as e:
            # pydantic's ValidationError is a ValueError too
            log_event("WARNING", "annotation_unparsable", node="analyze_checklist_image",
                      meta={"error": str(e), "reply": content[:500]})
            return EvidenceAnnotation(description=content,
                                      non_conformity_type="Erro na análise",
                                      severity="media",
                                      suggestions=["Tente novamente com outra imagem"],
                                      legal_reference="Verificar legislação aplicável")

    async def generate_text(self, context, activity_type) -> NonConformityDraft:
        legislation = await self._legislation(f"{context} {activity_type} segurança alimentos")
        prompt = NON_CONFORMITY_PROMPT.format(context=context, activity_type=activity_type,
                                              legislation=legislation)

        result = await ainvoke_llm(self.text_llm, [HumanMessage(content=prompt)],
                                   node="generate_text")
        content = _reply_text(result)

        try:
            return NonConformityDraft.model_validate(parse_json_reply(content))

        except ValueError as e:
            log_event("WARNING", "draft_unparsable", node="generate_text",
                      meta={"error": str(e), "reply": content[:500]})
            return NonConformityDraft(technical_description=content,
                                      legal_reference="Verificar legislação aplicável",
                                      risk="A determinar",
                                      corrective_actions=["Corrigir a não conformidade identificada"],
                                      preventive_actions=["Implementar controles preventivos"],
                                      deadline="A definir")
