"""Character Pack: text-only personalization for platforms without LoRA support."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence

from .models import CompileInput, LoraActivation

DEFAULT_LORA_PLATFORMS = ("flux", "sdxl", "stable_diffusion", "sd1.5", "sd_1.5")


def platform_supports_lora(platform: str, supported: Iterable[str] = DEFAULT_LORA_PLATFORMS) -> bool:
    """True when ``platform`` contains one of the LoRA-capable name fragments."""

    lowered = (platform or "").lower()
    return any(fragment.lower() in lowered for fragment in supported)


@dataclass
class CharacterPack:
    name: str
    platform: str
    trigger_concept: str
    description: str
    reference_notes: List[str] = field(default_factory=list)
    prompt_snippet: str = ""
    usage_instructions: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "platform": self.platform,
            "triggerConcept": self.trigger_concept,
            "description": self.description,
            "referenceNotes": list(self.reference_notes),
            "promptSnippet": self.prompt_snippet,
            "usageInstructions": self.usage_instructions,
        }

    def to_text(self) -> str:
        lines = [
            f"Character Pack: {self.name}",
            f"Platform: {self.platform}",
            f"Concept: {self.trigger_concept}",
            "",
            self.description,
        ]
        if self.reference_notes:
            lines.append("")
            lines.append("Reference notes:")
            lines.extend(f"- {note}" for note in self.reference_notes)
        lines.extend(["", f"Prompt snippet: {self.prompt_snippet}", "", self.usage_instructions])
        return "\n".join(lines).strip()


def _concept(trigger_word: str) -> str:
    return trigger_word.replace("_", " ").strip()


def build_character_pack(
    compile_input: CompileInput, activation: LoraActivation, platform: str
) -> CharacterPack:
    """Describe ``activation`` in prose for ``platform``."""

    concept = _concept(activation.trigger_word)
    subject = compile_input.subject.strip()
    notes: List[str] = [f"Keep the look of '{activation.model_name}' consistent across generations"]
    if subject:
        notes.append(f"Main subject: {subject}")
    if compile_input.environment:
        notes.append(f"Typical setting: {compile_input.environment}")
    if compile_input.restrictions:
        notes.append(f"Avoid: {compile_input.restrictions}")
    if activation.weight >= 1.0:
        notes.append("Apply the character traits strongly; they should dominate the image")
    elif activation.weight <= 0.5:
        notes.append("Apply the character traits lightly as a subtle influence")

    snippet_parts: Sequence[str] = [part for part in (subject, f"in the style of {concept}") if part]
    return CharacterPack(
        name=activation.model_name,
        platform=platform,
        trigger_concept=concept,
        description=(
            f"{platform} does not accept LoRA trigger syntax. This pack describes the "
            f"'{activation.model_name}' personalization as plain text guidance instead."
        ),
        reference_notes=notes,
        prompt_snippet=", ".join(snippet_parts),
        usage_instructions=(
            "Paste the prompt snippet into your prompt and upload your reference images "
            "when the platform supports image references."
        ),
    )
