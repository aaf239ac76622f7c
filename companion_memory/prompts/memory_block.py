from __future__ import annotations

from typing import Mapping

from .json_loader import load_prompt_json

SUPPORTED_LANGUAGES = ("en", "ar")

_EN = {
    "header": (
        "Additional internal context from the memory kernel "
        "(do not expose as analytics to the user):"
    ),
    "short_term_header": "Context from recent messages (use as soft guidance, not hard rules):",
    "short_dominant": "Recent window ({turns} turns): mostly {label} with average intensity {intensity}/5.",
    "short_grounding": (
        "Right now, keep the pace slow and grounding. Use small, structured steps "
        "and avoid pushing big tasks or sharp emotional jumps."
    ),
    "short_trend_calming": (
        "Recent signals suggest the user is starting to feel a bit calmer; gently acknowledge "
        "this progress and reinforce small positive shifts."
    ),
    "short_trend_climbing": (
        "Recent signals suggest emotional intensity is climbing; prioritise containment, "
        "grounding and reassurance over ambitious plans."
    ),
    "short_stability": "Emotion pattern in this conversation is {descriptor}.",
    "stability_stable": "stable",
    "stability_very_variable": "very up-and-down",
    "stability_somewhat_variable": "somewhat variable",
    "short_themes": "Current active themes: {topics}.",
    "short_scalar_dominant": (
        "So far in this conversation, the overall emotional centre has tended toward {label}."
    ),
    "short_scalar_intensity": "Typical intensity across turns so far is around {intensity}/5.",
    "long_term_header": (
        "Longer-term patterns (use gently; do not mention them explicitly as analytics):"
    ),
    "long_dominant": (
        "Across many conversations, this user often presents as {label_lower} in an emotional sense."
    ),
    "long_topics": "Common recurring topics over time: {topics}.",
    "long_topics_nudge": (
        "When it fits naturally, you may lightly connect your guidance to these recurring areas, "
        "without forcing the conversation back to them."
    ),
    "long_volatility": "Long-term emotional trajectory tends to be {descriptor}; avoid sudden shifts in tone.",
    "volatility_frequent": "frequently changing",
    "volatility_steady": "relatively steady",
    "volatility_moderate": "moderately variable",
    "persona_positive": (
        "This companion style generally works well for this user; keep the tone consistent "
        "with it rather than experimenting wildly."
    ),
    "persona_negative": (
        "Be extra gentle: past interactions with this companion style sometimes aligned "
        "with higher emotional intensity."
    ),
    "fallback_negative": (
        "Across many past conversations, the user frequently leans into heavier feelings such as "
        "sadness, anxiety or loneliness. Be especially steady and gentle."
    ),
    "fallback_positive": (
        "Over time the user often shows hopeful or grateful tones alongside difficulties; you can "
        "carefully reinforce these moments without forcing positivity."
    ),
    "fallback_pacing": (
        "Typical emotional intensity across conversations is around {intensity}/5; match your pacing "
        "to that level unless the current message clearly calls for a different depth."
    ),
    "continuity_fallback": (
        "Some emotional history exists for this user but it is still thin; keep continuity gentle "
        "and do not assume patterns."
    ),
    "identity": "The user's name is {name}. Use it naturally and sparingly.",
    "persona_preamble": (
        "Stable background about the user (use only to personalise gently; never list these back "
        "or present them as analytics):"
    ),
    "preferences_header": "Known preferences (mention only when it fits naturally):",
    "pref_season_like": "They have said they enjoy these seasons: {values}.",
    "pref_season_dislike": "They have said they dislike these seasons: {values}.",
    "pref_weather_like": "They enjoy this kind of weather: {values}.",
    "pref_weather_dislike": "They dislike this kind of weather: {values}.",
    "pref_pets_like": "They like these animals or pets: {values}.",
    "pref_pets_dislike": "They are not fond of these animals or pets: {values}.",
    "pref_crowds_dislike": (
        "Crowded places tend to make them uncomfortable; avoid casually suggesting busy settings."
    ),
    "pref_social_style": "They describe their social style as {style}.",
    "footer_title": "Guidelines for using this context:",
    "safety_hints": [
        "Use this context only to maintain emotional continuity, not to sound invasive.",
        "Do not quote specific past messages or dates; refer to themes in a general, human way.",
        "If you reference past struggles, keep it brief and focused on support, not analysis.",
    ],
    "emotion_labels": {},
    "social_styles": {},
    "list_separator": ", ",
}

_AR = {
    "header": "سياق داخلي إضافي من نواة الذاكرة (لا تعرضه على المستخدم كتحليلات):",
    "short_term_header": "سياق من الرسائل الأخيرة (استخدمه كإرشاد مرن وليس كقواعد صارمة):",
    "short_dominant": "آخر {turns} رسائل: يغلب عليها {label} بشدة متوسطة {intensity}/5.",
    "short_grounding": (
        "الآن حافظ على إيقاع هادئ ومطمئن. استخدم خطوات صغيرة ومنظمة وتجنب دفعه نحو مهام كبيرة "
        "أو قفزات عاطفية حادة."
    ),
    "short_trend_calming": (
        "تشير الإشارات الأخيرة إلى أن المستخدم بدأ يشعر بهدوء أكثر قليلًا؛ اعترف بهذا التقدم بلطف "
        "وعزّز التحولات الإيجابية الصغيرة."
    ),
    "short_trend_climbing": (
        "تشير الإشارات الأخيرة إلى أن الشدة العاطفية في ازدياد؛ قدّم الاحتواء والتهدئة والطمأنة "
        "على الخطط الطموحة."
    ),
    "short_stability": "النمط العاطفي في هذه المحادثة {descriptor}.",
    "stability_stable": "مستقر",
    "stability_very_variable": "متقلب جدًا",
    "stability_somewhat_variable": "متغير نوعًا ما",
    "short_themes": "المواضيع النشطة حاليًا: {topics}.",
    "short_scalar_dominant": "حتى الآن في هذه المحادثة يميل المركز العاطفي العام نحو {label}.",
    "short_scalar_intensity": "الشدة المعتادة عبر الرسائل حتى الآن حوالي {intensity}/5.",
    "long_term_header": "أنماط على المدى الأطول (استخدمها بلطف ولا تذكرها صراحةً كتحليلات):",
    "long_dominant": "عبر محادثات كثيرة يظهر هذا المستخدم غالبًا بحالة {label_lower} من الناحية العاطفية.",
    "long_topics": "مواضيع متكررة مع الوقت: {topics}.",
    "long_topics_nudge": (
        "عندما يكون ذلك طبيعيًا يمكنك ربط إرشادك بهذه المجالات المتكررة بخفة، دون إجبار المحادثة "
        "على العودة إليها."
    ),
    "long_volatility": "المسار العاطفي على المدى الطويل يميل لأن يكون {descriptor}؛ تجنب التحولات المفاجئة في النبرة.",
    "volatility_frequent": "كثير التغير",
    "volatility_steady": "ثابتًا نسبيًا",
    "volatility_moderate": "متغيرًا بشكل معتدل",
    "persona_positive": (
        "أسلوب الرفيق هذا يناسب هذا المستخدم عمومًا؛ حافظ على نبرة متسقة معه بدل التجريب المفرط."
    ),
    "persona_negative": (
        "كن لطيفًا بشكل مضاعف: التفاعلات السابقة مع أسلوب الرفيق هذا ترافقت أحيانًا مع شدة عاطفية أعلى."
    ),
    "fallback_negative": (
        "عبر محادثات سابقة كثيرة يميل المستخدم كثيرًا إلى مشاعر أثقل مثل الحزن أو القلق أو الوحدة. "
        "كن ثابتًا ولطيفًا بشكل خاص."
    ),
    "fallback_positive": (
        "مع الوقت يُظهر المستخدم غالبًا نبرة أمل أو امتنان إلى جانب الصعوبات؛ يمكنك تعزيز هذه "
        "اللحظات بحذر دون فرض الإيجابية."
    ),
    "fallback_pacing": (
        "الشدة العاطفية المعتادة عبر المحادثات حوالي {intensity}/5؛ اضبط إيقاعك على هذا المستوى "
        "ما لم تتطلب الرسالة الحالية عمقًا مختلفًا بوضوح."
    ),
    "continuity_fallback": (
        "يوجد تاريخ عاطفي لهذا المستخدم لكنه ما زال محدودًا؛ حافظ على الاستمرارية بلطف ولا تفترض أنماطًا."
    ),
    "identity": "اسم المستخدم {name}. استخدمه بشكل طبيعي ومن دون مبالغة.",
    "persona_preamble": (
        "خلفية ثابتة عن المستخدم (استخدمها فقط للتخصيص بلطف؛ لا تسردها ولا تعرضها كتحليلات):"
    ),
    "preferences_header": "تفضيلات معروفة (اذكرها فقط عندما يكون ذلك طبيعيًا):",
    "pref_season_like": "ذكر أنه يحب هذه الفصول: {values}.",
    "pref_season_dislike": "ذكر أنه لا يحب هذه الفصول: {values}.",
    "pref_weather_like": "يحب هذا النوع من الطقس: {values}.",
    "pref_weather_dislike": "لا يحب هذا النوع من الطقس: {values}.",
    "pref_pets_like": "يحب هذه الحيوانات أو الحيوانات الأليفة: {values}.",
    "pref_pets_dislike": "لا يميل إلى هذه الحيوانات أو الحيوانات الأليفة: {values}.",
    "pref_crowds_dislike": "الأماكن المزدحمة تسبب له عدم ارتياح؛ تجنب اقتراح الأماكن المكتظة بشكل عابر.",
    "pref_social_style": "يصف أسلوبه الاجتماعي بأنه {style}.",
    "footer_title": "إرشادات لاستخدام هذا السياق:",
    "safety_hints": [
        "استخدم هذا السياق فقط للحفاظ على الاستمرارية العاطفية، وليس لتبدو متطفلًا.",
        "لا تقتبس رسائل أو تواريخ سابقة محددة؛ أشر إلى المواضيع بشكل عام وإنساني.",
        "إذا أشرت إلى صعوبات سابقة فاجعل ذلك موجزًا ومركّزًا على الدعم وليس التحليل.",
    ],
    "emotion_labels": {
        "ANXIOUS": "القلق",
        "STRESSED": "التوتر",
        "SAD": "الحزن",
        "ANGRY": "الغضب",
        "LONELY": "الوحدة",
        "HOPEFUL": "الأمل",
        "GRATEFUL": "الامتنان",
        "HAPPY": "السعادة",
        "CALM": "الهدوء",
        "NEUTRAL": "الحياد",
    },
    "social_styles": {
        "introvert": "انطوائي",
        "extrovert": "اجتماعي منفتح",
        "ambivert": "بين الانطواء والانفتاح",
    },
    "list_separator": "، ",
}

_DEFAULTS = {"en": _EN, "ar": _AR}


def _cfg() -> dict[str, object]:
    return load_prompt_json("memory_block.json", _DEFAULTS)


def block_templates(language: str | None) -> dict[str, object]:
    """Template table for ``language``; anything other than ``ar`` renders in English."""
    key = "ar" if str(language or "").strip().lower() == "ar" else "en"
    tables = _cfg()
    table = tables.get(key)
    if not isinstance(table, Mapping):
        table = _DEFAULTS[key]
    merged = dict(_DEFAULTS[key])
    merged.update(table)
    return merged


def emotion_label(templates: Mapping[str, object], label: str) -> str:
    labels = templates.get("emotion_labels")
    if isinstance(labels, Mapping):
        translated = labels.get(label)
        if isinstance(translated, str) and translated:
            return translated
    return label


def social_style(templates: Mapping[str, object], style: str) -> str:
    styles = templates.get("social_styles")
    if isinstance(styles, Mapping):
        translated = styles.get(style.casefold())
        if isinstance(translated, str) and translated:
            return translated
    return style
