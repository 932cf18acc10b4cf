"""Ordered prompt transforms applied after the core compile step.

Each transform is a named ``str -> str`` function. The pipeline order is
LoRA, then cinematic, then Gemini Gems; :func:`build_pipeline` encodes it and
:func:`apply_transforms` folds the list over the compiled prompt.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import reduce
from typing import Callable, Iterable, List, Optional, Sequence

from .gems import GemLibrary, GemManifest, enhance_prompt
from .models import LoraActivation

LORA_TEMPLATES = {
    "angle": "<lora:{trigger}:{weight}>",
    "double_colon": "{trigger}::{weight}",
    "paren": "({trigger}:{weight})",
}


@dataclass(frozen=True)
class PromptTransform:
    name: str
    func: Callable[[str], str]

    def __call__(self, prompt: str) -> str:
        return self.func(prompt)


def apply_transforms(prompt: str, transforms: Iterable[PromptTransform]) -> str:
    return reduce(lambda acc, transform: transform(acc), transforms, prompt)


def format_weight(weight: float) -> str:
    text = f"{weight:.2f}".rstrip("0").rstrip(".")
    return text or "0"


def lora_fragment(activation: LoraActivation, syntax: str = "angle") -> str:
    template = LORA_TEMPLATES.get(syntax)
    if template is None:
        raise ValueError(f"Unsupported LoRA syntax: {syntax}")
    weighted = template.format(trigger=activation.trigger_word, weight=format_weight(activation.weight))
    return f"{activation.trigger_word}, {weighted}"


def lora_transform(activation: LoraActivation, syntax: str = "angle") -> PromptTransform:
    fragment = lora_fragment(activation, syntax)

    def _append(prompt: str) -> str:
        return f"{prompt}\n\n{fragment}" if prompt else fragment

    return PromptTransform("lora", _append)


def cinematic_transform(modifiers: Sequence[str]) -> PromptTransform:
    prefix = f"[VISUAL STYLE: {', '.join(modifiers)}]\n\n"
    return PromptTransform("cinematic", lambda prompt: f"{prefix}{prompt}")


def gems_transform(gems: Sequence[GemManifest], library: Optional[GemLibrary] = None) -> PromptTransform:
    selected = tuple(gems)
    return PromptTransform("gemini_gems", lambda prompt: enhance_prompt(prompt, selected, library))


def build_pipeline(
    lora: Optional[LoraActivation] = None,
    lora_syntax: str = "angle",
    cinematic_modifiers: Sequence[str] = (),
    gems: Sequence[GemManifest] = (),
    library: Optional[GemLibrary] = None,
) -> List[PromptTransform]:
    pipeline: List[PromptTransform] = []
    if lora is not None:
        pipeline.append(lora_transform(lora, lora_syntax))
    if cinematic_modifiers:
        pipeline.append(cinematic_transform(cinematic_modifiers))
    if gems:
        pipeline.append(gems_transform(gems, library))
    return pipeline
