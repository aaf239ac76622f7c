from __future__ import annotations

from typing import Mapping, Sequence

from .json_loader import load_prompt_json

SUPPORTED_LANGUAGES = ("en", "ar")

_DEFAULTS = {
    "list_separator": {"en": ", ", "ar": "، "},
    "persona_hint_templates": {
        "en": {
            "age": "They seem to be around {age} years old (approximate).",
            "location.city_country": "They are based in {city}, {country}.",
            "location.country": "They are based in {country}.",
            "language.primary_dialect": "They mainly use {language} and prefer a {dialect} style when speaking.",
            "language.primary": "They mainly use {language} in conversation.",
            "role.domain": "Their current role looks like {role} in {domain}.",
            "role": "They describe themselves mainly as {role}.",
            "job.title_field": "Their job title appears to be {title} in the field of {field}.",
            "job.title": "They mentioned a job title similar to {title}.",
            "goal.long_term": "They described a longer-term dream or direction: {goal}.",
            "goal.primary": "One important life direction they mentioned is: {goal}.",
            "goal.secondary": "They also talked about another direction or dream: {goal}.",
            "themes": "Recurring life themes they talk about: {themes}.",
            "personality": "They use words like {keywords} when describing their own personality.",
            "coping": "For coping, they sometimes lean on: {style}.",
            "mental": "They describe their longer-term mental state with phrases like: {phrases}.",
        },
        "ar": {
            "age": "يبدو أنه في عمر يقارب {age} سنة (تقديريًا).",
            "location.city_country": "يعيش في {city}، {country}.",
            "location.country": "يعيش في {country}.",
            "language.primary_dialect": "يميل لاستخدام {language} ويفضّل لهجة {dialect} في الكلام.",
            "language.primary": "يميل لاستخدام {language} في المحادثة.",
            "role.domain": "دوره الحالي يبدو كـ {role} في مجال {domain}.",
            "role": "يصف نفسه غالبًا بأنه {role}.",
            "job.title_field": "يبدو أن مسمّاه الوظيفي هو {title} في مجال {field}.",
            "job.title": "ذكر مسمّى وظيفي قريب من {title}.",
            "goal.long_term": "ذكر حلمًا أو توجهًا طويل الأمد: {goal}.",
            "goal.primary": "ذكر هدفًا مهمًا في حياته: {goal}.",
            "goal.secondary": "تحدّث أيضًا عن اتجاه أو حلم آخر: {goal}.",
            "themes": "مواضيع حياة تتكرّر في كلامه: {themes}.",
            "personality": "يستخدم كلمات مثل {keywords} لوصف شخصيته.",
            "coping": "عند التعامل مع الضغط يلجأ أحيانًا إلى: {style}.",
            "mental": "يصف حالته النفسية على المدى الطويل بعبارات مثل: {phrases}.",
        },
    },
}


def _cfg() -> dict[str, object]:
    return load_prompt_json("persona.json", _DEFAULTS)


def _language_table(key: str, language: str) -> Mapping[str, object]:
    tables = _cfg().get(key)
    defaults = _DEFAULTS[key]
    if not isinstance(tables, Mapping):
        tables = defaults
    table = tables.get(language) if language in SUPPORTED_LANGUAGES else None
    if not isinstance(table, Mapping) and isinstance(tables, Mapping):
        table = tables.get("en")
    return table if isinstance(table, Mapping) else {}


def list_separator(language: str) -> str:
    separators = _cfg().get("list_separator")
    if isinstance(separators, Mapping):
        value = separators.get(language if language in SUPPORTED_LANGUAGES else "en")
        if isinstance(value, str) and value:
            return value
    return ", "


def render_persona_hint(tag: str, fields: Mapping[str, str | Sequence[str]], language: str) -> str | None:
    template = _language_table("persona_hint_templates", language).get(tag)
    if not isinstance(template, str) or not template:
        return None
    separator = list_separator(language)
    values = {
        name: (value if isinstance(value, str) else separator.join(str(item) for item in value))
        for name, value in fields.items()
    }
    return template.format(**values)
