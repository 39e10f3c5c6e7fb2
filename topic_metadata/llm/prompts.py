"""Prompt templates for topic summaries."""

import json

from ..models import Topic

TOPIC_SUMMARY_SYSTEM = """You write very short, clear explanations of syllabus topics for UK GCSE and A-Level students.

You are given:
- A course (qualification level, exam board, subject).
- A single topic with its title, code, hierarchical path, and level.

You must:
1. Write a 1-2 sentence PLAIN-ENGLISH summary describing:
   - What this topic is about.
   - Why it matters for the exam (connection to other topics or exam focus).

2. Estimate a difficulty band for a typical student at this level:
   - "core" (foundational topic everyone must know, basic concept)
   - "standard" (normal expected level for this qualification)
   - "challenge" (more complex, often for higher marks or stretch questions)

3. Estimate exam_importance (0.0 to 1.0) based on:
   - How fundamental the topic is (0.9-1.0 for core concepts)
   - How often it typically appears in past papers (estimate)
   - Whether it's a prerequisite for other topics (higher if yes)
   - Default to 0.7 if uncertain

Guidelines by level:
- GCSE summaries: simpler language, concrete examples, avoid jargon
- A-Level summaries: more technical vocabulary, deeper connections
- Level 1 topics (broad): higher importance (0.8-1.0), often "core"
- Level 3-4 topics (specific): varies more, can be "challenge"
- Keep it friendly and encouraging - this helps anxious students

Return JSON:
{
  "topic_id": "string",
  "summary": "1-2 sentences in plain English (max 150 words)",
  "difficulty_band": "core|standard|challenge",
  "exam_importance": 0.0-1.0,
  "reasoning": "One sentence explaining your difficulty/importance choices"
}

Only output valid JSON. No extra text."""


def topic_context(topic: Topic) -> dict:
    """Structured course + topic descriptor sent with every summary request."""
    return {
        'course': {
            'level': topic.qualification_level,
            'board': topic.exam_board,
            'subject': topic.subject_name,
        },
        'topic': {
            'id': topic.topic_id,
            'title': topic.topic_name,
            'code': topic.topic_code,
            'level': topic.topic_level,
            'path': list(topic.full_path),
        },
    }


def topic_summary_prompt(topic: Topic) -> str:
    """User message for a single topic summary."""
    return json.dumps(topic_context(topic), ensure_ascii=False)
