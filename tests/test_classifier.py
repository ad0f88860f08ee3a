import asyncio

import pytest

from lubebot.config import load_settings
from lubebot.errors import MalformedUpstreamResultError
from lubebot.intent_resolver import IntentClassifier
from lubebot.prompt_loader import load_prompt, render_prompt


class ScriptedGemini:
    def __init__(self, reply):
        self.reply = reply
        self.prompts = []

    async def generate_text(self, prompt, model=None, temperature=0.0, max_output_tokens=0):
        self.prompts.append(prompt)
        return self.reply


@pytest.fixture
def prompt_path():
    return load_settings().prompts_dir / "intent_analysis.txt"


def test_shipped_prompt_renders(prompt_path):
    text = render_prompt(load_prompt(prompt_path), history="(none)", message="Ninja 400")
    assert "Ninja 400" in text
    assert '"vehicles"' in text


def test_bom_is_stripped(tmp_path):
    path = tmp_path / "bom.txt"
    path.write_bytes("\ufeffhello {message}".encode("utf-8"))
    assert load_prompt(path) == "hello {message}"


def test_classify_parses_fenced_json(prompt_path):
    gemini = ScriptedGemini('```json\n{"vehicles": [], "productCategory": "oil"}\n```')
    classifier = IntentClassifier(gemini, prompt_path)
    history = [{"role": "user", "content": "earlier question"}]
    payload = asyncio.run(classifier.classify("機油推薦", history))
    assert payload["productCategory"] == "oil"
    assert "user: earlier question" in gemini.prompts[0]


def test_classify_without_json_is_malformed(prompt_path):
    classifier = IntentClassifier(ScriptedGemini("I think it is a scooter."), prompt_path)
    with pytest.raises(MalformedUpstreamResultError):
        asyncio.run(classifier.classify("勁戰", []))
