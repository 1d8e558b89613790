import contextlib
import logging
import re
from dataclasses import dataclass

from config import OCR_MODEL, SOLVER_MODEL
from inference import InferenceBinding, result_text, run_text_completion, run_vision_ocr

logger = logging.getLogger(__name__)

OCR_TEMPERATURE = 0
OCR_MAX_TOKENS = 2000
SOLVER_TEMPERATURE = 0.1
SOLVER_MAX_TOKENS = 1500

CLEAN_QUESTION_PATTERN = re.compile(r'CLEAN_QUESTION:\s*(.*)$', re.IGNORECASE | re.DOTALL)

OCR_PROMPT = """
Classify this image as one of:
- PHYSICS_DIAGRAM
- CHEMISTRY_DIAGRAM
- PURE_MATH
- TEXT_ONLY
Return only the label.

You are a PHYSICS OCR ENGINE, NOT A SOLVER.

ABSOLUTE RULES:
- DO NOT interpret meaning
- DO NOT infer physics
- DO NOT simplify
- DO NOT rename variables

SCAN THE IMAGE IN 4 PASSES:
PASS 1: Printed question text
PASS 2: Diagram objects
PASS 3: Diagram labels
PASS 4: Options (A–D)

Output format:
RAW_TEXT:
DIAGRAM_OBJECTS:
DIAGRAM_LABELS:
OPTIONS:

You are a CHEMISTRY MCQ STRUCTURE TRANSCRIBER.
Describe each option structure exactly as drawn.

You are a MATHEMATICAL OCR ENGINE.
Transcribe symbols exactly.

RAW_TEXT:
EQUATIONS:
""".strip()

SOLVER_PROMPT_TEMPLATE = """
You are a UNIVERSAL STEM SOLVER.

MATH SAFETY RULES:
- Never expand (a ± b)^x unless x is a known integer.
- Verify identities by substitution.

PHYSICS SAFETY RULES:
- Magnetic field + conductor + resistance implies electromagnetic damping.

QUESTION:
{question}

DERIVATION STEPS:
Step 1:
$$ <governing equation> $$
Step 2:
$$ <definitions> $$
Step 3:
$$ <simplification> $$
Step 4:
$$ <required quantity> $$
Step 5:
$$ <substitution> $$

ANSWER:
Final Answer:
- Value with units
- If MCQ: Correct Option (A/B/C/D)
"""


class OCRFailedError(Exception):
    """The vision model returned no text for the image."""


@dataclass(frozen=True)
class InferenceOutcome:
    ocr_full: str
    clean_question: str
    solution: str

    def to_dict(self) -> dict:
        return {
            "ocr_full": self.ocr_full,
            "clean_question": self.clean_question,
            "solution": self.solution
        }


def ensure_vision_license(binding: InferenceBinding) -> None:
    """
    Send the one-time usage agreement for the vision model.
    The outcome is discarded: the agreement may already be on file or the
    model may be briefly unavailable, and neither matters to the caller.
    """
    with contextlib.suppress(Exception):
        binding.run(OCR_MODEL, {"prompt": "agree"})


def extract_text(binding: InferenceBinding, image_data_url: str) -> str:
    """
    Transcribe the image with the vision model.
    Args:
        binding: Hosted inference backend
        image_data_url: ``data:image/...`` URL of the uploaded image
    Returns:
        Trimmed transcription
    Raises:
        OCRFailedError: if the model produced no text
    """
    result = run_vision_ocr(
        binding,
        OCR_MODEL,
        OCR_PROMPT,
        image_data_url,
        temperature=OCR_TEMPERATURE,
        max_tokens=OCR_MAX_TOKENS
    )
    text = result_text(result)
    if not text:
        raise OCRFailedError("OCR failed")
    return text


def extract_clean_question(ocr_text: str) -> str:
    """Text after a ``CLEAN_QUESTION:`` marker, or the whole transcription when there is none."""
    match = CLEAN_QUESTION_PATTERN.search(ocr_text)
    return match.group(1).strip() if match else ocr_text


def build_solver_prompt(question: str) -> str:
    return SOLVER_PROMPT_TEMPLATE.format(question=question).strip()


def solve_question(binding: InferenceBinding, question: str) -> str:
    result = run_text_completion(
        binding,
        SOLVER_MODEL,
        build_solver_prompt(question),
        temperature=SOLVER_TEMPERATURE,
        max_tokens=SOLVER_MAX_TOKENS
    )
    return result_text(result)


def solve_image(binding: InferenceBinding, image_data_url: str) -> InferenceOutcome:
    """
    Run OCR on the image, pick out the question and solve it.
    The solve call only starts once the transcription is in hand.
    """
    ocr_text = extract_text(binding, image_data_url)
    logger.info("OCR returned %d characters", len(ocr_text))

    clean_question = extract_clean_question(ocr_text)

    solution = solve_question(binding, clean_question)
    logger.info("Solver returned %d characters", len(solution))

    return InferenceOutcome(
        ocr_full=ocr_text,
        clean_question=clean_question,
        solution=solution
    )
