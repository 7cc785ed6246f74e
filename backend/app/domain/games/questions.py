"""Fixed scenario bank for What Would You Do."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

from app.domain.games import models


@dataclass(frozen=True, slots=True)
class CategoryInfo:
	key: str
	name: str
	description: str


@dataclass(frozen=True, slots=True)
class Question:
	question_number: int
	category: str
	scenario_text: str
	core_question: str
	insight: str
	intensity: int
	suggested_duration: int
	analysis_hints: Tuple[str, ...] = ()


CATEGORIES: Dict[str, CategoryInfo] = {
	"trust_honesty": CategoryInfo("trust_honesty", "Trust & Honesty", "How openly you deal with uncomfortable truths"),
	"communication": CategoryInfo("communication", "Communication", "How you talk through conflict and hard topics"),
	"respect": CategoryInfo("respect", "Respect", "Boundaries, privacy and how you show up for each other"),
	"values": CategoryInfo("values", "Values & Priorities", "Family, friends and the future you want"),
	"control_flags": CategoryInfo("control_flags", "Red Flag Radar", "Spotting control dressed up as care"),
	"intimacy": CategoryInfo("intimacy", "Intimacy", "Consent and physical boundaries"),
}


QUESTIONS: Tuple[Question, ...] = (
	Question(
		1,
		"trust_honesty",
		"You learn your partner is carrying a large credit card debt they never told you about. When you bring it up they shrug it off and say they will sort it out. How do you feel and what do you do?",
		"Are they financially responsible and honest?",
		"Expectations around money transparency and hidden truths",
		2,
		60,
		("financial honesty", "trust", "money conversations", "accountability"),
	),
	Question(
		2,
		"trust_honesty",
		"It turns out your partner has been chatting with their ex regularly without mentioning it. They say it is only friendly and they kept quiet so you would not feel insecure. How do you react?",
		"Do they keep things from you \"for your own good\"?",
		"Boundaries around exes and what transparency means to each of you",
		3,
		60,
		("transparency", "ex boundaries", "trust", "insecurity"),
	),
	Question(
		3,
		"communication",
		"After a real disagreement your partner stops talking to you for three days, then behaves as if nothing happened. How do you deal with that pattern?",
		"Can they handle conflict like an adult?",
		"Conflict style and emotional maturity",
		2,
		60,
		("conflict resolution", "emotional maturity", "patterns"),
	),
	Question(
		4,
		"communication",
		"Your partner says something that hurts. Instead of apologising they tell you it was a joke and that you are too sensitive, and it keeps happening. What do you do?",
		"Do they take responsibility or deflect?",
		"Accountability and emotional intelligence",
		3,
		60,
		("accountability", "gaslighting", "self-respect"),
	),
	Question(
		5,
		"communication",
		"You try to talk honestly about physical expectations or past experiences. Your partner shuts down, changes the subject or judges you for raising it. What next?",
		"Can they talk about hard things?",
		"Maturity around difficult and intimate conversations",
		3,
		60,
		("openness", "judgment", "intimacy communication"),
	),
	Question(
		6,
		"respect",
		"Your partner looked through your phone while you slept. When you confront them they ask why you mind if you have nothing to hide. What happens now?",
		"Do they respect your boundaries?",
		"Privacy expectations and boundary respect",
		3,
		60,
		("privacy", "boundaries", "manipulation"),
	),
	Question(
		7,
		"respect",
		"Around their family your partner brushes off your opinions and talks over you. Afterwards they say they have to act that way around their relatives. How do you handle it?",
		"Are they the same person everywhere?",
		"Public versus private treatment and loyalty",
		3,
		60,
		("public respect", "consistency", "family dynamics"),
	),
	Question(
		8,
		"respect",
		"You land a big career win that puts you ahead of your partner. Rather than celebrating they go quiet and make small remarks that undercut it. What do you do?",
		"Can they handle you being successful?",
		"Ego, insecurity and celebrating each other",
		2,
		60,
		("ego", "support", "equality"),
	),
	Question(
		9,
		"values",
		"Your partner's parents disapprove of you. Your partner says they need time to win them over, but six months later nothing has changed. What do you need from your partner?",
		"Will they choose you?",
		"Whether family or the relationship gets the final say",
		3,
		90,
		("family loyalty", "commitment", "action versus words"),
	),
	Question(
		10,
		"values",
		"Your partner's closest friends make you uneasy because of how they treat people. Your partner insists they are not like them. Is that a problem for you?",
		"What do their friendships reveal about them?",
		"Values alignment through the company you keep",
		2,
		60,
		("values", "friend circle", "character"),
	),
	Question(
		11,
		"values",
		"Things are getting serious but your partner dodges every conversation about where to live, kids or money and says you should just enjoy the present. How do you handle this?",
		"Are they serious about a future with you?",
		"Commitment readiness and future plans",
		3,
		60,
		("commitment", "future planning", "avoidance"),
	),
	Question(
		12,
		"control_flags",
		"Your partner gets upset whenever you spend time with friends and calls it caring too much. What is your take?",
		"Is this love or control?",
		"Jealousy and control presented as affection",
		3,
		60,
		("jealousy", "control", "independence"),
	),
	Question(
		13,
		"control_flags",
		"Your partner shares every detail of your relationship online, even hints about fights. When you ask for privacy they say you would want to show it off if you loved them. What do you do?",
		"Do they respect your need for privacy?",
		"Privacy and guilt-tripping",
		2,
		60,
		("privacy", "social media", "guilt-tripping"),
	),
	Question(
		14,
		"control_flags",
		"Your partner accepts a promotion that means seventy-hour weeks for two years, without asking how you feel about barely seeing them. How do you respond?",
		"Are you part of their decisions?",
		"Partnership in big life decisions",
		2,
		60,
		("partnership", "decision making", "priorities"),
	),
	Question(
		15,
		"intimacy",
		"Your partner keeps pushing for physical intimacy faster than you are comfortable with and sulks or says you would not make them wait if you loved them. How do you respond?",
		"Do they respect your physical boundaries?",
		"Consent and respect for boundaries",
		4,
		60,
		("consent", "boundaries", "pressure"),
	),
)

assert len(QUESTIONS) == models.SCENARIO_QUESTIONS

_BY_NUMBER: Dict[int, Question] = {q.question_number: q for q in QUESTIONS}


def get(question_number: int) -> Question:
	return _BY_NUMBER[question_number]


def category_of(question_number: int) -> str:
	return _BY_NUMBER[question_number].category


def category_name(key: str) -> str:
	info = CATEGORIES.get(key)
	return info.name if info else key
