"""
LLM prompts for module summarization, card generation and evidence checking.

Each prompt pins the exact JSON shape the parser expects. Content is always
presented with chunk ids so that cards can cite their evidence.
"""
from __future__ import annotations

from deckforge.generation.models import Chunk, StageAOutput

# =============================================================================
# Few-shot examples (HR domain)
# =============================================================================

FEW_SHOT_CHUNKS = """--- Chunk c1 [organizational_culture.pptx, Page/Slide: slide 2] ---
Organizational culture is a system of shared assumptions, values, and beliefs that governs how people behave in organizations. Every organization develops and maintains a unique culture, which provides guidelines and boundaries for the behavior of its members.

--- Chunk c2 [organizational_culture.pptx, Page/Slide: slide 5] ---
Edgar Schein proposed three levels of organizational culture: Artifacts are the visible elements such as dress code, office layout, and rituals. Espoused Values are the stated values and rules of behavior. Basic Assumptions are deeply embedded, taken-for-granted behaviors which are usually unconscious.

--- Chunk c3 [recruitment_process.pdf, Page/Slide: p.12] ---
The recruitment process consists of five key stages: job analysis, sourcing candidates, screening applications, interviewing, and selection. Modern recruitment increasingly relies on applicant tracking systems and structured interview formats to improve consistency and legal compliance."""

STAGE_A_FEW_SHOT = f"""=== EXAMPLE ===
Content:
{FEW_SHOT_CHUNKS}

Response:
{{
  "summary": "Organizational culture is the shared assumptions, values and beliefs that govern workplace behavior. Schein describes it on three levels: artifacts, espoused values and basic assumptions. Recruitment runs through five stages from job analysis to selection, supported by applicant tracking systems and structured interviews.",
  "learning_objectives": [
    "Define organizational culture and its role in guiding behavior",
    "Describe Schein's three levels of organizational culture",
    "List the five stages of the recruitment process"
  ],
  "key_terms": ["organizational culture", "artifacts", "espoused values", "basic assumptions", "applicant tracking systems"],
  "content_themes": ["Culture fundamentals", "Recruitment basics"],
  "estimated_difficulty": "beginner"
}}"""

STAGE_B_FEW_SHOT = f"""=== EXAMPLE ===
Content:
{FEW_SHOT_CHUNKS}

Response:
{{
  "cards": [
    {{
      "question": "What is organizational culture?",
      "answer": "A system of shared assumptions, values, and beliefs that governs how people behave in organizations.",
      "rationale": "Core definition for understanding workplace behavior.",
      "evidence": [{{"chunk_id": "c1", "excerpt": "Organizational culture is a system of shared assumptions, values, and beliefs that governs how people behave in organizations."}}],
      "bloom_level": "Remember",
      "difficulty": "easy",
      "confidence_score": 0.98,
      "learning_objective_ref": "Define organizational culture and its role in guiding behavior"
    }},
    {{
      "question": "According to Edgar Schein, which level of organizational culture includes dress code and office layout?",
      "answer": "Artifacts, the visible elements of culture such as dress code, office layout, and rituals.",
      "rationale": "Applies Schein's model to concrete workplace features.",
      "evidence": [{{"chunk_id": "c2", "excerpt": "Artifacts are the visible elements such as dress code, office layout, and rituals."}}],
      "bloom_level": "Understand",
      "difficulty": "medium",
      "confidence_score": 0.95,
      "learning_objective_ref": "Describe Schein's three levels of organizational culture"
    }},
    {{
      "question": "What are the five key stages of the recruitment process?",
      "answer": "Job analysis, sourcing candidates, screening applications, interviewing, and selection.",
      "rationale": "The stage sequence frames every recruitment decision.",
      "evidence": [{{"chunk_id": "c3", "excerpt": "The recruitment process consists of five key stages: job analysis, sourcing candidates, screening applications, interviewing, and selection."}}],
      "bloom_level": "Remember",
      "difficulty": "easy",
      "confidence_score": 0.97,
      "learning_objective_ref": "List the five stages of the recruitment process"
    }}
  ]
}}"""



# =============================================================================
# Stage A: Module Summarization
# =============================================================================

STAGE_A_SYSTEM_PROMPT = """You are an expert educational content analyst. Analyze course content and extract:
1. A comprehensive summary of the material
2. Clear learning objectives (use Bloom's taxonomy verbs: remember, understand, apply, analyze, evaluate, create)
3. Key terms and concepts that learners should know
4. Main content themes
5. Estimated difficulty level

Respond ONLY with valid JSON matching this schema:
{
  "summary": "A 2-4 paragraph summary of the content...",
  "learning_objectives": [
    "Understand the concept of...",
    "Apply knowledge of... to..."
  ],
  "key_terms": ["term1", "term2", "term3"],
  "content_themes": ["Theme 1", "Theme 2"],
  "estimated_difficulty": "beginner" | "intermediate" | "advanced"
}

Guidelines:
- Include 2-10 learning objectives, each starting with a Bloom's verb
- Key terms must be vocabulary that appears in the content
- Base difficulty on vocabulary complexity and concept depth
- Do NOT include information that is not in the content

""" + STAGE_A_FEW_SHOT


def build_stage_a_prompt(chunks: list[Chunk], module_title: str | None = None) -> str:
    sections = []
    for i, chunk in enumerate(chunks, start=1):
        source = f"[Source: {chunk.source_file or 'unknown'}"
        if chunk.slide_or_page:
            source += f", Page/Slide: {chunk.slide_or_page}"
        source += "]"
        sections.append(f"--- Section {i} {source} ---\n{chunk.text}")

    header = f"Module Title: {module_title}\n\n" if module_title else ""
    content = "\n\n".join(sections)
    return (
        f"{header}Content to analyze:\n\n{content}\n\n"
        "Analyze this educational content and provide a summary, learning objectives, "
        "key terms, themes, and difficulty level."
    )


# =============================================================================
# Stage B: Flashcard Generation
# =============================================================================

STAGE_B_SYSTEM_PROMPT = """You are an expert educational flashcard creator. Generate high-quality flashcards from educational content.

For each flashcard you must:
1. Write a clear, specific question
2. Give a concise, accurate answer (max 40 words)
3. Cite evidence: the chunk_id and an EXACT 1-2 sentence excerpt from that chunk
4. Classify the Bloom's taxonomy level
5. Rate the difficulty (easy, medium, hard)
6. Give a confidence score (0-1) based on evidence strength

Respond ONLY with valid JSON:
{
  "cards": [
    {
      "question": "What is...?",
      "answer": "It is...",
      "rationale": "Tests understanding of...",
      "evidence": [{"chunk_id": "c1", "excerpt": "Exact sentence from chunk c1."}],
      "bloom_level": "Understand",
      "difficulty": "medium",
      "confidence_score": 0.9,
      "learning_objective_ref": "Understand the concept of..."
    }
  ]
}

Rules:
- Excerpts MUST be copied verbatim from the cited chunk
- Every number in an answer must appear in the cited excerpt
- Avoid yes/no questions and trivia
- Do not include information not present in the source

""" + STAGE_B_FEW_SHOT


def build_stage_b_prompt(
    stage_a: StageAOutput,
    chunks: list[Chunk],
    target_count: int,
    difficulty_mix: dict[str, int],
) -> str:
    objectives = "\n".join(f"{i}. {o}" for i, o in enumerate(stage_a.learning_objectives, start=1))
    key_terms = ", ".join(stage_a.key_terms)
    summary = " ".join(stage_a.summaries)
    mix = ", ".join(f"{count} {level}" for level, count in difficulty_mix.items() if count)

    sections = []
    for chunk in chunks:
        location = f", Page/Slide: {chunk.slide_or_page}" if chunk.slide_or_page else ""
        sections.append(
            f"--- Chunk {chunk.chunk_id} [{chunk.source_file or 'unknown'}{location}] ---\n{chunk.text}"
        )

    return f"""Module summary:
{summary}

Learning objectives to address:
{objectives}

Key terms: {key_terms}

Source content:

{chr(10).join(sections)}

Generate {target_count} flashcards. Difficulty mix: {mix}.
- Each card cites at least one chunk_id with an EXACT excerpt
- Cover different learning objectives where possible
- Mix Bloom's levels (primarily Understand and Apply)"""


# =============================================================================
# Evidence verification (LLM-as-judge)
# =============================================================================

VERIFICATION_SYSTEM_PROMPT = """You are an expert fact-checker for educational flashcards. Verify that a flashcard's answer is supported by the provided evidence.

Evaluate:
1. Is the answer factually supported by the evidence?
2. Are there claims in the answer NOT supported by evidence (hallucination)?
3. How much of the answer is covered by the evidence?

Respond ONLY with valid JSON:
{
  "is_supported": true,
  "confidence": 0.0,
  "issues": ["specific issues, if any"],
  "evidence_coverage": "full" | "partial" | "none",
  "hallucination_detected": false,
  "explanation": "Brief explanation"
}

Be strict: if in doubt, mark as unsupported."""


def build_verification_prompt(question: str, answer: str, evidence: list[tuple[str, str]]) -> str:
    evidence_text = "\n\n".join(
        f'Evidence {i} (from {chunk_id}):\n"{excerpt}"'
        for i, (chunk_id, excerpt) in enumerate(evidence, start=1)
    )
    return f"""Verify this flashcard:

QUESTION: {question}

ANSWER: {answer}

EVIDENCE:
{evidence_text}

Is the answer properly supported by the evidence? Check for unsupported claims."""
