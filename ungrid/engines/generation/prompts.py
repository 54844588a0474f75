"""
Instruction templates sent alongside images to the generation service.
"""

from ungrid.engines.extraction.layouts import ProcessingMode, Resolution
from ungrid.modules.imagery.models import FixKind


FIDELITY_TEMPLATE = (
    "Create a high-fidelity copy of this image. "
    "Strictly preserve the original colors, lighting, exposure, and artistic style. "
    "Do not add new details, do not change the texture, and do not \"improve\" the image. "
    "The goal is a faithful, sharp reproduction of the input image at {resolution} resolution."
)

CREATIVE_TEMPLATE = (
    "Create a high-fidelity version of this image. "
    "Maintain the exact composition and pose, but enhance details, lighting, and texture "
    "to professional studio quality. "
    "Optimize color grading for a premium look at {resolution} resolution."
)

FIX_TEMPLATES = {
    FixKind.RESTORE_DETAIL: (
        "The first image is the target, the second image is a reference of the same character. "
        "Restore the face and fine details of the target so they match the reference: "
        "identity, facial features, eye shape, hair and skin tone. "
        "Keep the target's pose, framing, lighting and background unchanged."
    ),
    FixKind.RESTORE_LINEWORK: (
        "The first image is the target, the second image is a reference of the same character. "
        "Redraw the line work of the target with clean, confident strokes that follow the "
        "reference's line weight and style. "
        "Keep the target's composition, colors and proportions unchanged."
    ),
}

CHAIN_TEMPLATE = (
    "Edit this image: {instruction}. "
    "Change only what the instruction asks for and keep everything else identical."
)

CHAIN_REFERENCE_SUFFIX = (
    " Use the second image as a reference for character identity and style."
)


def build_panel_prompt(mode: ProcessingMode, resolution: Resolution) -> str:
    template = FIDELITY_TEMPLATE if ProcessingMode(mode) is ProcessingMode.FIDELITY else CREATIVE_TEMPLATE
    return template.format(resolution=Resolution(resolution).value)


def build_job_prompt(fix_kind: FixKind, context_text: str = "") -> str:
    prompt = FIX_TEMPLATES[FixKind(fix_kind)]
    context_text = (context_text or "").strip()
    if context_text:
        prompt += f" Additional context: {context_text}"
    return prompt


def build_chain_prompt(instruction: str, has_reference: bool) -> str:
    prompt = CHAIN_TEMPLATE.format(instruction=instruction.strip().rstrip("."))
    if has_reference:
        prompt += CHAIN_REFERENCE_SUFFIX
    return prompt
