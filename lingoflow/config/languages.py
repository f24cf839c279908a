# /lingoflow/config/languages.py

# Language names and phonetic notation hints used when building prompts.
# Keys are the codes/identifiers the client sends in the flow context.

LANGUAGE_NAMES = {
    "en": "English",
    "zh": "Chinese",
    "english": "English",
    "chinese": "Chinese",
    "cantonese": "Cantonese",
    "spanish": "Spanish",
    "portuguese": "Portuguese",
    "french": "French",
    "russian": "Russian",
    "japanese": "Japanese",
    "german": "German",
    "korean": "Korean",
    "italian": "Italian",
    "turkish": "Turkish",
    "polish": "Polish",
    "dutch": "Dutch",
}

PHONETIC_FORMATS = {
    "english": 'Use IPA (International Phonetic Alphabet) notation, e.g., "/hɛloʊ/"',
    "japanese": 'Use Romaji (romanized form), e.g., "konnichiwa"',
    "chinese": 'Use Pinyin, e.g., "dān cí"',
    "cantonese": 'Use Jyutping, e.g., "daan1 ci4"',
    "korean": 'Use Revised Romanization, e.g., "annyeonghaseyo"',
    "spanish": 'Use IPA notation, e.g., "/hɔla/"',
    "french": 'Use IPA notation, e.g., "/bɔnʒuʁ/"',
    "german": 'Use IPA notation, e.g., "/gʊtən tɑk/"',
    "portuguese": 'Use IPA notation, e.g., "/ɔla/"',
    "italian": 'Use IPA notation, e.g., "/tʃao/"',
    "russian": 'Use IPA notation, e.g., "/privet/"',
    "turkish": 'Use IPA notation, e.g., "/mɛrhaba/"',
    "polish": 'Use IPA notation, e.g., "/tʃɛst/"',
    "dutch": 'Use IPA notation, e.g., "/hɑlo/"',
}

DEFAULT_PHONETIC_FORMAT = "Use standard phonetic notation appropriate for the language"
