from typing import List, Optional

from pydantic import BaseModel


class Language(BaseModel):
    code: str
    name: str
    native_name: str
    popular: bool = False


def _lang(code: str, name: str, native_name: str, popular: bool = False) -> Language:
    return Language(code=code, name=name, native_name=native_name, popular=popular)


SUPPORTED_LANGUAGES: List[Language] = [
    _lang("en", "English", "English", True),
    _lang("zh", "Chinese (Simplified)", "简体中文", True),
    _lang("es", "Spanish", "Español", True),
    _lang("ar", "Arabic", "العربية", True),
    _lang("hi", "Hindi", "हिन्दी", True),
    _lang("fr", "French", "Français", True),
    _lang("ru", "Russian", "Русский", True),
    _lang("pt", "Portuguese", "Português", True),
    _lang("de", "German", "Deutsch", True),
    _lang("ja", "Japanese", "日本語", True),
    _lang("ko", "Korean", "한국어"),
    _lang("it", "Italian", "Italiano"),
    _lang("tr", "Turkish", "Türkçe"),
    _lang("pl", "Polish", "Polski"),
    _lang("nl", "Dutch", "Nederlands"),
    _lang("vi", "Vietnamese", "Tiếng Việt"),
    _lang("id", "Indonesian", "Bahasa Indonesia"),
    _lang("th", "Thai", "ไทย"),
    _lang("uk", "Ukrainian", "Українська"),
    _lang("ro", "Romanian", "Română"),
    _lang("cs", "Czech", "Čeština"),
    _lang("sv", "Swedish", "Svenska"),
    _lang("el", "Greek", "Ελληνικά"),
    _lang("hu", "Hungarian", "Magyar"),
    _lang("da", "Danish", "Dansk"),
    _lang("fi", "Finnish", "Suomi"),
    _lang("no", "Norwegian", "Norsk"),
    _lang("sk", "Slovak", "Slovenčina"),
    _lang("bg", "Bulgarian", "Български"),
    _lang("hr", "Croatian", "Hrvatski"),
    _lang("bn", "Bengali", "বাংলা"),
    _lang("ta", "Tamil", "தமிழ்"),
]


def find_language(code: str) -> Optional[Language]:
    code = (code or "").lower()
    for lang in SUPPORTED_LANGUAGES:
        if lang.code == code:
            return lang
    return None


def is_valid_language_code(code: str) -> bool:
    return find_language(code) is not None


def language_name(code: str) -> str:
    lang = find_language(code)
    return lang.name if lang else code
