from datetime import datetime, tzinfo
from html import escape
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from limits.rate_limit import LimitCheck
from schemas import Identification, QualityFailure

# --- Статические тексты
START = (
    "🦁 <b>Wildlife ID Bot</b>\n\n"
    "Пришлите фото любого животного, и я определю вид.\n\n"
    "📷 Достаточно просто отправить фото, команды не нужны!\n\n"
    "<b>Команды:</b>\n"
    "/start - приветствие\n"
    "/help - справка\n"
    "/identify - как распознавать\n"
    "/limit - недельный лимит\n"
    "/clear - очистить чат"
)

HELP = (
    "📖 <b>Как пользоваться:</b>\n\n"
    "1️⃣ Отправьте одно фото или сразу несколько\n"
    "2️⃣ Укажите, где сделан снимок (или /skip)\n"
    "3️⃣ Получите подробное определение!\n\n"
    "💡 <b>Советы:</b>\n"
    "• Несколько фото за раз анализируются пакетом\n"
    "• Фото одного вида группируются\n"
    "• Подпись к фото уточняет, кого искать на снимке\n"
    "• /limit покажет недельный лимит"
)

INFO = (
    "ℹ️ <b>О боте</b>\n\n"
    "Фото анализирует визуальная модель, название сверяется с GBIF, "
    "для птиц дополнительно с таксономией eBird. Эталонное фото берётся из iNaturalist."
)

IDENTIFY_HOWTO = (
    "📷 <b>Как распознать животное:</b>\n\n"
    "1️⃣ Отправьте фото или несколько фото сразу\n"
    "2️⃣ Укажите место (или /skip)\n"
    "3️⃣ Получите подробное определение!\n\n"
    "💡 Ответьте командой <code>/identify птица слева</code> на сообщение с фото, "
    "чтобы распознать конкретное животное.\n\n"
    "<i>Просто отправьте фото, чтобы начать!</i>"
)

MENU = "📋 <b>Меню</b>\n\nНажмите кнопку ниже или просто отправьте фото животного!"
MENU_CLEAR_ALERT = "Отправьте /clear, чтобы очистить чат"

ASK_LOCATION = "🌍 <b>Где сделано фото?</b>\n\nОтветьте названием места или координатами, либо /skip"
ASK_TARGET = (
    "🎯 <b>Кого нужно определить?</b>\n\n"
    "Ответьте описанием (например, «птица слева», «бабочка»), либо /skip"
)
ASK_BATCH_LOCATION = "🌍 <b>Где сделаны эти фото?</b>\n\nОтветьте названием места или /skip"

ANALYZING = "🔬 <b>Анализирую...</b>"
NOTHING_TO_SKIP = "❌ Нет ожидающего запроса, который можно пропустить."
NO_PHOTO_DATA = "❌ Данные фото не найдены. Попробуйте ещё раз."
DATA_EXPIRED = "❌ Данные устарели. Распознайте фото заново."
NO_SIMILAR = "Нет данных о похожих видах"
DETAILS_SENT = "📬 Подробности отправлены в личные сообщения!"
SIMILAR_SENT = "📬 Похожие виды отправлены в личные сообщения!"
CHAT_CLEARED = "🗑️ Чат очищен"
ALL_PHOTOS_FAILED = "❌ Не удалось обработать ни одно фото. Попробуйте ещё раз."
CLASSIFIER_DOWN = "🚫 Сервис распознавания сейчас недоступен. Попробуйте позже."
GENERIC_ERROR = "🚫 Что-то пошло не так. Попробуйте позже."
CALLBACK_ERROR = "❌ Произошла ошибка"
NOTHING_IDENTIFIED = "❌ Не удалось определить животных на фото."

BTN_DETAILS = "📚 Подробнее"
BTN_SIMILAR = "🔍 Похожие виды"

MENU_BUTTONS: List[List[Tuple[str, str]]] = [
    [("🦁 Старт", "menu_start"), ("📖 Помощь", "menu_help")],
    [("📷 Как распознать", "menu_identify"), ("📊 Лимит", "menu_limit")],
    [("🗑️ Очистить чат", "menu_clear")],
]

# --- Причины отказа классификатора
QUALITY_REASONS = ("low_resolution", "obstructed", "too_distant", "poor_quality")
ISSUE_ICONS = {
    "low_resolution": "📉",
    "obstructed": "🌿",
    "too_distant": "🔭",
    "poor_quality": "📷",
    "no_animal": "🚫",
    "target_not_found": "🎯",
    "unsupported_format": "🗂",
    "file_too_large": "📦",
    "bad_proportions": "📐",
    "unreadable": "🗂",
    "download_failed": "📥",
    "classifier_unavailable": "🛠",
}
REASON_TEXTS = {
    "low_resolution": ("Низкое разрешение", "Разрешение слишком низкое, отличительные признаки не видны."),
    "obstructed": ("Животное закрыто", "Животное частично скрыто, определить его сложно."),
    "too_distant": ("Слишком далеко", "Животное слишком далеко, признаки не различить."),
    "poor_quality": ("Плохое качество", "Снимок слишком тёмный, размытый или пересвеченный."),
    "no_animal": ("Животное не найдено", "На фото не найдено животных, которых можно определить."),
    "target_not_found": ("Объект не найден", "Не удалось найти на фото то, что вы описали."),
    "unsupported_format": ("Формат не поддерживается", "Пришлите фото в JPEG или PNG."),
    "file_too_large": ("Файл слишком большой", "Пришлите фото поменьше."),
    "bad_proportions": ("Плохие пропорции", "Снимок слишком вытянутый."),
    "unreadable": ("Файл не читается", "Не удалось открыть изображение."),
    "download_failed": ("Не удалось скачать", "Фото не удалось скачать из Telegram."),
    "classifier_unavailable": ("Сервис недоступен", "Сервис распознавания не ответил."),
}
DEFAULT_TIP = "Попробуйте прислать более чёткое фото, где животное видно целиком и крупно."

# --- IUCN
IUCN_DISPLAY = {
    "EX": ("⬛💀", "Исчез (Extinct)"),
    "EW": ("⬛☠️", "Исчез в дикой природе (Extinct in the Wild)"),
    "CR": ("🟥🔴", "На грани исчезновения (Critically Endangered)"),
    "EN": ("🟧🟠", "Под угрозой (Endangered)"),
    "VU": ("🟨🟡", "Уязвимый (Vulnerable)"),
    "NT": ("🟩🟢", "Близок к уязвимому (Near Threatened)"),
    "LC": ("🟢✅", "Вызывает наименьшие опасения (Least Concern)"),
    "DD": ("⬜❓", "Недостаточно данных (Data Deficient)"),
    "NE": ("⚪", "Не оценивался (Not Evaluated)"),
}
_IUCN_NAMES = (
    ("EXTINCT IN THE WILD", "EW"),
    ("CRITICALLY", "CR"),
    ("NEAR THREATENED", "NT"),
    ("LEAST CONCERN", "LC"),
    ("DATA DEFICIENT", "DD"),
    ("NOT EVALUATED", "NE"),
    ("VULNERABLE", "VU"),
    ("ENDANGERED", "EN"),
    ("EXTINCT", "EX"),
)

WEEKDAYS = ("пн", "вт", "ср", "чт", "пт", "сб", "вс")


def iucn_code(status: Optional[str]) -> Optional[str]:
    """Map free-form status text ('LC', 'Least Concern', 'VU (IUCN 3.1)') to a Red List code."""
    if not status:
        return None
    upper = status.upper()
    for name, code in _IUCN_NAMES:
        if name in upper:
            return code
    for token in upper.replace("(", " ").replace(")", " ").replace("/", " ").split():
        if token in IUCN_DISPLAY:
            return token
    return None


# --- Результат
def callback_payload(action: str, scientific_name: str) -> str:
    return f"{action}_{'_'.join(scientific_name.split())}"


def parse_callback_payload(data: str) -> Tuple[str, str]:
    action, _, name = data.partition("_")
    return action, name.replace("_", " ")


def result_caption(ident: Identification, links: Sequence[Tuple[str, str]] = (), photo_count: int = 1, composite: bool = True) -> str:
    """Caption under the result; the composite already carries the names."""
    parts: List[str] = []
    if not composite:
        title = f"<b>{escape(ident.common_name or ident.scientific_name)}</b>\n<i>{escape(ident.scientific_name)}</i>"
        if ident.valid_subspecies:
            title += f"\n\nПодвид: <i>{escape(ident.valid_subspecies)}</i>"
        parts.append(title)
    if photo_count > 1:
        parts.append(f"📸 <i>{photo_count} фото этого вида</i>")
    if links:
        parts.append(format_links(links))
    return "\n\n".join(parts)


def format_links(links: Iterable[Tuple[str, str]]) -> str:
    return " • ".join(f'<a href="{escape(url)}">{escape(title)}</a>' for title, url in links)


def format_details(ident: Identification) -> str:
    parts = [
        "📚 <b>Подробная информация</b>",
        f"<b>{escape(ident.common_name)}</b>\n<i>{escape(ident.scientific_name)}</i>",
    ]

    tax = ident.taxonomy
    rows = [
        ("Отряд", tax.order, False),
        ("Семейство", tax.family, False),
        ("Подсемейство", tax.subfamily, False),
        ("Род", tax.genus, True),
    ]
    lines = [f"{label}: <i>{escape(value)}</i>" if italic else f"{label}: {escape(value)}" for label, value, italic in rows if value]
    parts.append("🏷️ <b>Таксономия:</b>" + ("\n" + "\n".join(lines) if lines else ""))

    if ident.description:
        parts.append(f"📝 <b>Описание:</b>\n{escape(ident.description)}")
    if ident.geographic_range:
        parts.append(f"🌍 <b>Ареал:</b>\n{escape(ident.geographic_range)}")

    global_status = (ident.iucn_status.global_ if ident.iucn_status else None) or ident.conservation_status
    code = iucn_code(global_status)
    if code:
        icon, name = IUCN_DISPLAY[code]
        global_line = f"{icon} {name} (IUCN 3.1)"
    else:
        global_line = "⚪ Не оценивался"

    local = ident.iucn_status.local if ident.iucn_status else None
    local_code = iucn_code(local)
    if local_code:
        icon, name = IUCN_DISPLAY[local_code]
        local_line = f"{icon} {name}"
    elif local:
        local_line = escape(local)
    else:
        local_line = "⚪ Не оценивался"

    parts.append(
        "🛡️ <b>Охранный статус:</b>\n\n"
        f"<b>Глобальный (Красный список МСОП):</b>\n{global_line}\n\n"
        f"<b>Местный:</b>\n{local_line}"
    )
    return "\n\n".join(parts)


def _similar_entry(item: Any) -> str:
    if isinstance(item, dict):
        name = item.get("name") or item.get("species") or item.get("commonName") or ""
        reason = item.get("reason") or ""
        return f"{name} - {reason}" if reason else str(name)
    return str(item)


def format_similar(ident: Identification, limit: int = 5) -> str:
    lines = [f"{i}. {escape(_similar_entry(item))}" for i, item in enumerate(ident.similar_species[:limit], 1)]
    return "🔍 <b>Рассмотренные похожие виды:</b>\n\n" + "\n\n".join(lines)


def cannot_pm(bot_username: str) -> str:
    return f"⚠️ Сначала начните чат с @{bot_username}, затем нажмите кнопку снова."


# --- Отказы
def quality_failure_message(failure: QualityFailure) -> str:
    reason = failure.reason
    icon = ISSUE_ICONS.get(reason, "❌")
    title, default_text = REASON_TEXTS.get(reason, ("Не удалось определить животное", escape(reason.replace("_", " "))))

    if failure.quality_issue:
        text = f"{icon} <b>Проблема с изображением</b>\n\n{escape(failure.quality_issue)}"
    else:
        text = f"{icon} <b>{title}</b>\n\n{default_text}"

    if failure.suggestion:
        text += f"\n\n💡 <b>Совет:</b> {escape(failure.suggestion)}"
    elif reason in QUALITY_REASONS:
        text += f"\n\n💡 <b>Совет:</b> {DEFAULT_TIP}"
    return text


def _photos(n: int) -> str:
    return f"{n} фото"


def batch_started(count: int) -> str:
    return f"📸 <b>Обрабатываю {_photos(count)}...</b>\n\nКаждое фото будет определено отдельно."


def batch_progress(index: int, total: int) -> str:
    return f"🔬 <b>Анализирую фото {index}/{total}...</b>"


def batch_summary(analyzed: int, identified: int, failed: int, species: Sequence[Tuple[Identification, int]]) -> str:
    lines = [
        "📊 <b>Результаты определения</b>",
        "",
        f"📸 Проанализировано фото: {analyzed}",
        f"✅ Определено: {identified}",
    ]
    if failed:
        lines.append(f"❌ Не удалось: {failed}")
    lines.append("")
    lines.append(f"🦁 <b>Найдено видов: {len(species)}</b>")
    for ident, count in species:
        line = f"• <i>{escape(ident.scientific_name)}</i> ({escape(ident.common_name)})"
        if count > 1:
            line += f" - {_photos(count)}"
        lines.append(line)
    return "\n".join(lines)


def batch_failures(failures: Sequence[Tuple[int, QualityFailure]], everything_failed: bool) -> Optional[str]:
    """Failures grouped by reason: quality problems, no animal, everything else."""
    quality = [(i, f) for i, f in failures if f.reason in QUALITY_REASONS]
    no_animal = [(i, f) for i, f in failures if f.reason == "no_animal"]
    other = [(i, f) for i, f in failures if f.reason not in QUALITY_REASONS and f.reason != "no_animal"]

    blocks: List[str] = []
    if quality:
        lines = [f"⚠️ <b>Проблемы с качеством ({_photos(len(quality))})</b>", ""]
        for index, failure in quality:
            issue = failure.quality_issue or failure.reason.replace("_", " ")
            lines.append(f"{ISSUE_ICONS.get(failure.reason, '❌')} Фото {index + 1}: {escape(issue)}")
        tip = next((f.suggestion for _, f in quality if f.suggestion), None)
        if tip:
            lines.append(f"\n💡 <b>Совет:</b> {escape(tip)}")
        blocks.append("\n".join(lines))
    if no_animal:
        blocks.append(f"🚫 На {_photos(len(no_animal))} не найдено животных, которых можно определить.")
    if other:
        reasons: Dict[str, List[int]] = {}
        for index, failure in other:
            reasons.setdefault(failure.reason, []).append(index + 1)
        lines = [
            f"{ISSUE_ICONS.get(reason, '❌')} {escape(REASON_TEXTS.get(reason, (reason.replace('_', ' '), ''))[0])}: "
            f"фото {', '.join(map(str, indexes))}"
            for reason, indexes in reasons.items()
        ]
        blocks.append("\n".join(lines))
    if not blocks and everything_failed:
        return NOTHING_IDENTIFIED
    return "\n\n".join(blocks) if blocks else None


# --- Лимиты
def progress_bar(used: int, limit: int) -> str:
    percentage = min(100, round(used / limit * 100)) if limit else 100
    filled = round(percentage / 10)
    cell = "🟥" if used >= limit else "🟩"
    return f"{cell * filled}{'⬜' * (10 - filled)} {percentage}%"


def humanize_delta(seconds: float) -> str:
    minutes = int(seconds // 60)
    if minutes < 1:
        return "< 1м"
    days, rest = divmod(minutes, 24 * 60)
    hours, minutes = divmod(rest, 60)
    if days:
        return f"{days}д {hours}ч"
    if hours:
        return f"{hours}ч {minutes}м"
    return f"{minutes}м"


def format_reset_time(reset_at: datetime, tz: tzinfo) -> str:
    local = reset_at.astimezone(tz)
    return f"{WEEKDAYS[local.weekday()]}, {local:%d.%m.%Y %H:%M} ({local.tzname()})"


def limit_status(check: LimitCheck, tz: tzinfo, seconds_left: float, is_private: bool) -> str:
    scope = "ваш личный" if is_private else "лимит чата"
    if not check.allowed:
        status = f"🚫 <b>ЛИМИТ ИСЧЕРПАН</b>\n❌ Использовано: {check.used}/{check.limit}"
    elif check.remaining <= 5:
        status = f"⚠️ <b>Осталось немного!</b>\n✅ Использовано: {check.used}/{check.limit}"
    else:
        status = f"✅ Использовано: {check.used}/{check.limit}"
    return (
        f"📊 <b>Недельный лимит</b> ({scope})\n\n"
        f"{progress_bar(check.used, check.limit)}\n\n"
        f"{status}\n"
        f"📦 Осталось: {check.remaining}\n\n"
        f"🔄 <b>Сброс:</b> {format_reset_time(check.reset_at, tz)}\n"
        f"⏳ <b>До сброса:</b> {humanize_delta(seconds_left)}"
    )


def limit_reached(check: LimitCheck, tz: tzinfo, seconds_left: float, is_private: bool) -> str:
    who = "Вы использовали" if is_private else "Этот чат использовал"
    return (
        "⚠️ <b>Недельный лимит исчерпан</b>\n\n"
        f"{who} все {check.limit} определений на этой неделе.\n\n"
        f"🔄 Сброс: {format_reset_time(check.reset_at, tz)}\n"
        f"⏳ Осталось: {humanize_delta(seconds_left)}"
    )


def not_enough_quota(photo_count: int, check: LimitCheck, tz: tzinfo) -> str:
    return (
        "⚠️ <b>Недостаточно лимита</b>\n\n"
        f"Вы отправили {_photos(photo_count)}, а осталось только {check.remaining} определений.\n\n"
        "Отправьте меньше фото или дождитесь сброса.\n"
        f"🔄 Сброс: {format_reset_time(check.reset_at, tz)}"
    )
