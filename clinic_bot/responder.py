import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Tuple

EN = 'en'
AR = 'ar'

ARABIC_RE = re.compile('[\u0600-\u06FF]')

DEFAULT_CURRENCY = 'USD'

DEFAULT_GREETING = {
    EN: 'Hello! Welcome to our dental clinic. How can we help you today?',
    AR: 'مرحبا! مرحبا بكم في عيادتنا للأسنان. كيف يمكننا مساعدتكم اليوم؟',
}

MENU = {
    EN: (
        '\n\nPlease choose one of the following options:'
        '\n📍 Location'
        '\n🕒 Working Hours'
        '\n💰 Prices & Services'
        '\n📅 Book Appointment'
        '\n📞 Call Us'
        '\n💬 Talk to Human'
    ),
    AR: (
        '\n\nالرجاء اختيار أحد الخيارات التالية:'
        '\n📍 الموقع'
        '\n🕒 ساعات العمل'
        '\n💰 الأسعار والخدمات'
        '\n📅 حجز موعد'
        '\n📞 الاتصال بنا'
        '\n💬 التحدث إلى شخص'
    ),
}

TEXTS = {
    EN: {
        'no_address': 'Clinic address information is not available.',
        'hours_title': 'Working Hours:',
        'no_hours': 'Working hours are not currently available.',
        'services_title': 'Our Services:',
        'service_line': '- {name}: {price} {currency} ({duration} mins)',
        'no_services': 'Service list is not currently available.',
        'booking': (
            'To book an appointment, please provide the service you need and your '
            'preferred date and time. For example: "I want to book a cleaning for '
            'tomorrow at 10 AM."'
        ),
        'call': 'You can call us at: {phone}',
        'no_phone': 'Phone number not available',
        'human': 'A human agent will contact you shortly.',
        'fallback': "Sorry, I didn't understand your request. Please use the menu below for assistance.",
    },
    AR: {
        'no_address': 'عنوان العيادة غير متوفر حالياً.',
        'hours_title': 'ساعات العمل:',
        'no_hours': 'ساعات العمل غير متوفرة حالياً.',
        'services_title': 'قائمة الخدمات:',
        'service_line': '- {name}: {price} {currency} ({duration} دقيقة)',
        'no_services': 'قائمة الخدمات غير متوفرة حالياً.',
        'booking': (
            'لحجز موعد، يرجى ذكر الخدمة التي تحتاجها والتاريخ والوقت المفضلين. '
            'مثال: "أريد حجز تنظيف غداً الساعة 10 صباحاً."'
        ),
        'call': 'يمكنك الاتصال بنا على: {phone}',
        'no_phone': 'رقم الهاتف غير متوفر',
        'human': 'سيتواصل معك أحد موظفينا قريباً.',
        'fallback': 'عذراً، لم أفهم طلبك. يرجى استخدام القائمة أدناه للحصول على المساعدة.',
    },
}


@dataclass(frozen=True)
class ServiceItem:
    name_en: str
    price: float
    duration: int
    name_ar: Optional[str] = None
    currency: Optional[str] = None


@dataclass(frozen=True)
class KeywordRule:
    keyword: str
    response_en: str
    response_ar: Optional[str] = None


@dataclass(frozen=True)
class ClinicConfig:
    """Read-only snapshot of everything the bot needs to answer for one clinic."""
    greeting_en: Optional[str] = None
    greeting_ar: Optional[str] = None
    working_hours: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    services: Tuple[ServiceItem, ...] = ()
    keywords: Tuple[KeywordRule, ...] = ()
    address: Optional[str] = None
    phone: Optional[str] = None
    currency: Optional[str] = None
    language_preference: Optional[str] = None


def normalize(text: str) -> str:
    return (text or '').strip().lower()


def has_arabic(text: str) -> bool:
    return bool(ARABIC_RE.search(text or ''))


def select_locale(text: str, preference: Optional[str]) -> str:
    """Arabic only when the clinic allows it and the sender wrote Arabic."""
    pref = (preference or '').strip().lower()
    if pref in (AR, 'bilingual') and has_arabic(text):
        return AR
    return EN


# ---------- reply builders ----------

def _fmt_price(price) -> str:
    value = float(price)
    return str(int(value)) if value.is_integer() else str(value)


def _greeting(config: ClinicConfig, locale: str) -> str:
    custom = config.greeting_ar if locale == AR else config.greeting_en
    return (custom or DEFAULT_GREETING[locale]) + MENU[locale]


def _location(config: ClinicConfig, locale: str) -> str:
    return config.address or TEXTS[locale]['no_address']


def _hours(config: ClinicConfig, locale: str) -> str:
    t = TEXTS[locale]
    if not config.working_hours:
        return t['no_hours']
    lines = [t['hours_title']]
    for day, slot in config.working_hours.items():
        slot = slot or {}
        opens, closes = slot.get('open'), slot.get('close')
        if opens and closes:
            lines.append(f"{day[:1].upper()}{day[1:]}: {opens} - {closes}")
    return '\n'.join(lines)


def _services(config: ClinicConfig, locale: str) -> str:
    t = TEXTS[locale]
    if not config.services:
        return t['no_services']
    lines = [t['services_title']]
    for s in config.services:
        name = s.name_ar if locale == AR and s.name_ar else s.name_en
        lines.append(t['service_line'].format(
            name=name,
            price=_fmt_price(s.price),
            currency=s.currency or config.currency or DEFAULT_CURRENCY,
            duration=s.duration,
        ))
    return '\n'.join(lines)


def _booking(config: ClinicConfig, locale: str) -> str:
    return TEXTS[locale]['booking']


def _contact(config: ClinicConfig, locale: str) -> str:
    t = TEXTS[locale]
    return t['call'].format(phone=config.phone or t['no_phone'])


def _human(config: ClinicConfig, locale: str) -> str:
    return TEXTS[locale]['human']


def _fallback(config: ClinicConfig, locale: str) -> str:
    return TEXTS[locale]['fallback']


# ---------- rule table ----------

@dataclass(frozen=True)
class Intent:
    name: str
    en_triggers: Tuple[str, ...]
    ar_triggers: Tuple[str, ...]
    reply: Callable[[ClinicConfig, str], str]

    def matches(self, normalized: str, arabic: bool) -> bool:
        if any(w in normalized for w in self.en_triggers):
            return True
        # Arabic triggers only count when the message actually has Arabic script
        return arabic and any(w in normalized for w in self.ar_triggers)


INTENTS: Tuple[Intent, ...] = (
    Intent('greeting', ('hi', 'hello', 'start', 'help'), ('مرحبا', 'السلام', 'اهلا'), _greeting),
    Intent('location', ('location', 'address', 'where'), ('عنوان', 'مكان', 'اين'), _location),
    Intent('hours', ('hours', 'time', 'open', 'close'), ('ساعات', 'وقت', 'يفتح'), _hours),
    Intent('services', ('price', 'cost', 'service', 'list'), ('سعر', 'تكلفة', 'خدمة'), _services),
    Intent('booking', ('book', 'appointment', 'schedule'), ('حجز', 'ميعاد', 'جدولة'), _booking),
    Intent('contact', ('call', 'contact', 'phone'), ('اتصل', 'هاتف', 'اتصال'), _contact),
    Intent('human', ('human', 'agent', 'speak', 'talk'), ('انسان', 'وكيل', 'تحدث'), _human),
)

KEYWORD = 'keyword'
FALLBACK = 'fallback'


def match_keyword(normalized: str, keywords) -> Optional[KeywordRule]:
    for rule in keywords:
        kw = normalize(rule.keyword)
        if kw and kw in normalized:
            return rule
    return None


def classify(text: str, config: ClinicConfig) -> str:
    """Name of the rule that would answer ``text``."""
    normalized = normalize(text)
    if match_keyword(normalized, config.keywords):
        return KEYWORD
    arabic = has_arabic(text)
    for intent in INTENTS:
        if intent.matches(normalized, arabic):
            return intent.name
    return FALLBACK


def respond(text: str, config: ClinicConfig, locale: str) -> Optional[str]:
    """First matching rule wins. Pure: never writes to ``config``."""
    normalized = normalize(text)
    if not normalized:
        return None
    if locale not in TEXTS:
        locale = EN

    rule = match_keyword(normalized, config.keywords)
    if rule:
        if locale == AR and rule.response_ar:
            return rule.response_ar
        return rule.response_en

    arabic = has_arabic(text)
    for intent in INTENTS:
        if intent.matches(normalized, arabic):
            return intent.reply(config, locale)
    return _fallback(config, locale)
