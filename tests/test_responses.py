import asyncio
import pytest
from audit.errors import InvalidAnswer, DocumentationIncomplete, TransientError, BackendUnavailable
from audit.models import CustomAnswer, StandardAnswer, TemplateItem
from audit.responses import allowed_answers, validate_answer
from conftest import make_controller, template_item

def _template(**extra):
    return TemplateItem.model_validate(template_item("a", **extra))

def test_standard_items_accept_the_four_states_only():
    item = _template()
    assert allowed_answers(item) == ["conforme", "nao_conforme", "nao_aplicavel", "nao_avaliado"]
    assert validate_answer(item, "nao_aplicavel") == StandardAnswer.NAO_APLICAVEL
    with pytest.raises(InvalidAnswer):
        validate_answer(item, "talvez")

def test_custom_options_replace_the_standard_set():
    item = _template(usarRespostasPersonalizadas=True, opcoesResposta=["Sim", "Não"])
    assert validate_answer(item, "Sim") == CustomAnswer(value="Sim")
    with pytest.raises(InvalidAnswer):
        validate_answer(item, "conforme")
    with pytest.raises(InvalidAnswer):
        validate_answer(item, "nao_avaliado")

def test_typed_custom_answers():
    number = _template(tipoRespostaCustomizada="numero")
    assert validate_answer(number, "4.5") == CustomAnswer(value="4.5")
    with pytest.raises(InvalidAnswer):
        validate_answer(number, "quatro")

    date = _template(tipoRespostaCustomizada="data")
    assert validate_answer(date, "2024-05-01").value == "2024-05-01"
    with pytest.raises(InvalidAnswer):
        validate_answer(date, "01/05/2024")

    text = _template(tipoRespostaCustomizada="texto")
    assert allowed_answers(text) is None
    with pytest.raises(InvalidAnswer):
        validate_answer(text, "   ")

    select = _template(tipoRespostaCustomizada="select")
    with pytest.raises(InvalidAnswer):
        validate_answer(select, "A")

def test_answer_is_applied_and_saved():
    controller = make_controller(template_item("a", peso=2))

    asyncio.run(controller.answer_item("item-a", "conforme"))

    item = controller.session.items[0]
    assert item.answer == StandardAnswer.CONFORME
    assert item.score == 2
    assert controller.api.called("answer_item") == [("audit-1", "item-a", "conforme", None)]

def test_invalid_answer_never_reaches_the_api():
    controller = make_controller(template_item("a"))

    with pytest.raises(InvalidAnswer):
        asyncio.run(controller.answer_item("item-a", "sim"))

    assert controller.api.calls == []
    assert controller.session.items[0].answer == StandardAnswer.NAO_AVALIADO

def test_failed_save_reverts_the_answer():
    controller = make_controller(template_item("a"))
    controller.api.failures["answer_item"] = BackendUnavailable("offline")

    with pytest.raises(TransientError) as exc:
        asyncio.run(controller.answer_item("item-a", "nao_conforme"))

    assert exc.value.recoverable
    item = controller.session.items[0]
    assert item.answer == StandardAnswer.NAO_AVALIADO
    assert item.score == 0
    assert controller.session.editable

def test_observation_rejects_blank_text():
    controller = make_controller(template_item("a"))

    async def scenario():
        await controller.answer_item("item-a", "conforme")
        await controller.save_observation("item-a", "   ")

    with pytest.raises(DocumentationIncomplete):
        asyncio.run(scenario())
    assert controller.session.items[0].observation == ""

def test_observation_requires_photo_when_option_demands_it():
    controller = make_controller(template_item(
        "a", opcoesRespostaConfig=[{"valor": "nao_conforme", "fotoObrigatoria": True}]))

    async def scenario():
        await controller.answer_item("item-a", "nao_conforme")
        await controller.save_observation("item-a", "Caixas no chão")

    with pytest.raises(DocumentationIncomplete):
        asyncio.run(scenario())

def test_observation_is_saved_with_ai_fields():
    controller = make_controller(template_item("a"))

    async def scenario():
        await controller.answer_item("item-a", "nao_conforme")
        controller.session.items[0].ai_description = "Caixas apoiadas no piso"
        await controller.save_observation("item-a", "Caixas no chão da despensa")

    asyncio.run(scenario())

    _, _, answer, extras = controller.api.called("answer_item")[-1][:4]
    assert answer == "nao_conforme"
    assert extras == {"observacao": "Caixas no chão da despensa",
                      "descricaoIa": "Caixas apoiadas no piso"}
    assert controller.session.items[0].observation == "Caixas no chão da despensa"

def test_failed_observation_save_restores_previous_text():
    controller = make_controller(template_item("a"))

    async def scenario():
        await controller.answer_item("item-a", "conforme")
        controller.api.failures["answer_item"] = BackendUnavailable("offline")
        await controller.save_observation("item-a", "Tudo certo")

    with pytest.raises(TransientError):
        asyncio.run(scenario())
    assert controller.session.items[0].observation == ""
