"""
Pattern Definitions for Member Search

All regex pattern groups, vocabularies and LLM prompt templates used by the
extractor. Modules import from here instead of defining patterns inline.
"""

# =============================================================================
# Intent Pattern Groups
# =============================================================================
# Each family is a dict of named sub-groups. The extractor counts how many
# sub-groups of a family match; that count drives intent strength.

INTENT_PATTERNS = {
    "document": {
        "question": [
            r"^(what|how|when|where|why)\s+(is|are|was|were|do|does|did|can|should|would)\b",
            r"^what['’]?s\b",
            r"^how\s+(do|can|should|would)\s+(i|we)\b",
            r"^(can|may|should)\s+(i|we)\b",
            r"\bis\s+it\s+allowed\b",
        ],
        "policy": [
            r"\b(polic(y|ies)|rules?|regulations?|procedures?|guidelines?|by-?laws?)\b",
            r"\b(fees?|charges?|timings?|circulars?|notices?|minutes|agm|constitution)\b",
        ],
    },
    "member": {
        "search_verb": [
            r"\b(find|search|searching|show\s+me|list|get\s+me|connect\s+me|recommend|suggest)\b",
            r"\blook(ing)?\s+for\b",
            r"\bneed\s+(a|an|some|someone)\b",
        ],
        "who_has": [
            r"\bwho\s+(has|have|is|are|knows?|works?|can|does|do|provides?|offers?|deals?)\b",
            r"\b(anyone|someone|somebody)\s+(who|with|in|from|working|doing|into)\b",
        ],
        "role_noun": [
            r"\b(experts?|specialists?|professionals?|engineers?|developers?|consultants?)\b",
            r"\b(founders?|entrepreneurs?|business(es)?|compan(y|ies)|firms?|startups?)\b",
            r"\b(vendors?|suppliers?|manufacturers?|agenc(y|ies)|providers?)\b",
            r"\b(doctors?|lawyers?|architects?|designers?|mentors?|investors?|owners?)\b",
            r"\b(directors?|ceos?|ctos?|managers?|alumni|alumnus|batchmates?|classmates?)\b",
            r"\b(members?|people|contacts?|residents?|neighbou?rs?|graduates?|peers?)\b",
        ],
    },
    "conversational": {
        "greeting": [
            r"^(hi+|hello|hey|namaste|vanakkam|good\s+(morning|afternoon|evening))\b",
        ],
        "thanks": [
            r"^(thanks?|thank\s+you|thx|ok(ay)?|cool|great|bye)\b",
        ],
        "help": [
            r"^(help|menu|start|what\s+can\s+you\s+do)\b",
        ],
    },
}


# =============================================================================
# Search Type Patterns (checked in order, first match wins)
# =============================================================================

_ALUMNI_WORDS = r"\b(alumni|alumnus|batch(mates?)?|classmates?|passout|graduates?|seniors?|juniors?|peers?)\b"
_BUSINESS_WORDS = (
    r"\b(business(es)?|compan(y|ies)|firms?|startups?|vendors?|suppliers?|manufacturers?"
    r"|services?|providers?|turnover|revenue|agenc(y|ies))\b"
)

SEARCH_TYPE_PATTERNS = [
    ("find_person", [
        r"\bwho\s+is\s+[a-z]+",
        r"\bcontact\s+(of|for|details)\b",
        r"\b(phone\s+number|email)\s+of\b",
        r"\b(named|called)\s+[a-z]+",
    ]),
    ("find_business", [_BUSINESS_WORDS]),
    ("find_peers", [_ALUMNI_WORDS]),
]

# Alumni-run businesses need both families to match
ALUMNI_BUSINESS_PATTERNS = (_ALUMNI_WORDS, _BUSINESS_WORDS)

NAME_PATTERN = r"\b(?:named|called|who\s+is)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)"


# =============================================================================
# Location Gazetteer
# =============================================================================

CITIES = [
    "Chennai", "Bangalore", "Hyderabad", "Mumbai", "Delhi", "Pune", "Kolkata",
    "Coimbatore", "Madurai", "Trichy", "Salem", "Tirupur", "Erode", "Vellore",
    "Kochi", "Trivandrum", "Mysore", "Mangalore", "Ahmedabad", "Surat",
    "Jaipur", "Lucknow", "Noida", "Gurgaon", "Chandigarh", "Indore",
    "Nagpur", "Visakhapatnam", "Vijayawada", "Bhubaneswar",
    "Tamil Nadu", "Karnataka", "Telangana", "Maharashtra", "Kerala",
    "Andhra Pradesh", "Gujarat",
]

LOCATION_ALIASES = {
    "bengaluru": "Bangalore",
    "bombay": "Mumbai",
    "madras": "Chennai",
    "calcutta": "Kolkata",
    "new delhi": "Delhi",
    "gurugram": "Gurgaon",
    "tiruchirappalli": "Trichy",
    "cochin": "Kochi",
    "thiruvananthapuram": "Trivandrum",
    "mysuru": "Mysore",
    "vizag": "Visakhapatnam",
}


# =============================================================================
# Skill, Service and Degree Vocabularies
# =============================================================================

SKILL_KEYWORDS = [
    "web development", "web design", "software development", "software", "app development",
    "digital marketing", "marketing", "SEO", "content marketing",
    "consulting", "IT consulting", "business consulting",
    "manufacturing", "construction", "architecture",
    "real estate", "packaging", "logistics",
    "AI", "ML", "artificial intelligence", "machine learning", "data science",
    "cloud", "AWS", "Azure", "devops",
    "mobile development", "android", "iOS",
    "UI/UX", "graphic design", "design",
    "testing", "QA", "quality assurance",
    "blockchain", "cryptocurrency",
    "healthcare", "medical", "pharma",
    "education", "training", "e-learning",
    "finance", "fintech", "accounting",
    "HR", "recruitment", "talent acquisition",
]

# Acronyms that collide with ordinary words are matched case-sensitively
CASE_SENSITIVE_SKILLS = {"IT", "HR", "QA"}

SERVICE_KEYWORDS = [
    "catering", "interior design", "event management", "printing", "transport",
    "legal services", "tax filing", "auditing", "insurance", "export", "import",
    "civil contracting", "plumbing", "electrical contracting", "security services",
    "placement", "coaching", "photography", "travel",
]

SERVICE_PATTERN = r"\b([a-z]+(?:\s+[a-z]+)?)\s+(?:services?|solutions?)\b"

SERVICE_STOPWORDS = {
    "the", "a", "an", "any", "some", "good", "best", "offers", "provides", "providing",
    "for", "with", "in", "of", "who", "that", "need", "find", "and",
}

DEGREE_KEYWORDS = {
    "mechanical": "Mechanical Engineering",
    "civil": "Civil Engineering",
    "ece": "Electronics and Communication Engineering",
    "electronics": "Electronics and Communication Engineering",
    "eee": "Electrical and Electronics Engineering",
    "electrical": "Electrical and Electronics Engineering",
    "cse": "Computer Science Engineering",
    "computer science": "Computer Science Engineering",
    "information technology": "Information Technology",
    "textile": "Textile Engineering",
    "chemical": "Chemical Engineering",
    "biotechnology": "Biotechnology",
    "biotech": "Biotechnology",
    "mba": "MBA",
    "mca": "MCA",
}

DEGREE_PATTERNS = [
    r"\b(mechanical|civil|textile|chemical|electrical|biotechnology|biotech)\s*"
    r"(?:engineering|engineers?|department|dept|branch|stream|graduates?)\b",
    r"\b(ECE|EEE|CSE|MBA|MCA)\b",
    r"\b(computer\s+science|information\s+technology|electronics)\b",
]

MEMBER_TYPE_PATTERNS = [
    ("alumni", r"\b(alumni|alumnus|batchmates?|classmates?)\b"),
    ("entrepreneur", r"\b(entrepreneurs?|business\s+owners?|founders?)\b"),
    ("resident", r"\b(residents?|neighbou?rs?)\b"),
]


# =============================================================================
# Year Patterns
# =============================================================================

YEAR_RANGE_PATTERN = r"\b(?:between\s+)?(19\d{2}|20\d{2})\s*(?:-|to|and|till|until)\s*(19\d{2}|20\d{2})\b"
YEAR_AFTER_PATTERN = r"\b(after|since|post|from)\s+(19\d{2}|20\d{2})\b"
YEAR_BEFORE_PATTERN = r"\b(before|prior\s+to|until|till|upto|up\s+to)\s+(19\d{2}|20\d{2})\b"
YEAR_BATCH_PATTERNS = [
    r"\b(?:batch|passout|pass\s*out|class|graduated|grad)\s*(?:of|in)?\s*'?(\d{4}|\d{2})\b",
    r"\b'?(\d{4}|\d{2})\s*(?:batch|passout|pass\s*out|grads?|graduates?)\b",
]
BARE_YEAR_PATTERN = r"\b(19[5-9]\d|20\d{2})\b"

MIN_GRADUATION_YEAR = 1950


# =============================================================================
# Turnover Patterns
# =============================================================================

TURNOVER_UNITS = {
    "crore": 10_000_000,
    "crores": 10_000_000,
    "cr": 10_000_000,
    "lakh": 100_000,
    "lakhs": 100_000,
    "lac": 100_000,
    "lacs": 100_000,
    "million": 1_000_000,
    "millions": 1_000_000,
    "mn": 1_000_000,
    "billion": 1_000_000_000,
    "billions": 1_000_000_000,
    "bn": 1_000_000_000,
}

_UNIT = r"(crores?|cr|lakhs?|lacs?|millions?|mn|billions?|bn)?\b"
_AMOUNT = r"(?:rs\.?\s*|inr\s*)?(\d+(?:\.\d+)?)\s*"

TURNOVER_BETWEEN_PATTERN = r"\bbetween\s+" + _AMOUNT + _UNIT + r"\s*(?:and|to|-)\s*" + _AMOUNT + _UNIT
TURNOVER_MIN_PATTERN = (
    r"(?:\b(?:above|over|more\s+than|greater\s+than|exceeding|at\s+least|minimum|min)|>)\s*"
    + _AMOUNT + _UNIT
)
TURNOVER_MAX_PATTERN = (
    r"(?:\b(?:below|under|less\s+than|upto|up\s+to|at\s+most|maximum|max)|<)\s*"
    + _AMOUNT + _UNIT
)
TURNOVER_BUCKET_PATTERNS = [
    r"\b(high|medium|mid|low|small)\s*-?\s*(?:turnover|revenue)\b",
    r"\b(?:turnover|revenue)\s+(?:is\s+)?(high|medium|low)\b",
]
TURNOVER_CONTEXT_PATTERN = r"\b(turnover|revenue|sales|annual)\b"

TURNOVER_BUCKETS = {
    "high": (100_000_000, None),
    "medium": (20_000_000, 100_000_000),
    "mid": (20_000_000, 100_000_000),
    "low": (None, 20_000_000),
    "small": (None, 20_000_000),
}


# =============================================================================
# Follow-up Patterns
# =============================================================================

FOLLOW_UP_PATTERNS = [
    r"^(what|how)\s+about\b",
    r"^(and|also|only)\s+(in|from|at|for|with)\b",
    r"^(same|similar)\s+(in|for|but)\b",
    r"^(in|from|at)\s+[a-z]+\s*\??$",
]


# =============================================================================
# LLM Prompts
# =============================================================================

EXTRACTION_SCHEMA = {
    "type": "object",
    "properties": {
        "intent": {
            "type": "string",
            "enum": ["member_search", "document_qa", "hybrid", "conversational"],
        },
        "search_type": {
            "type": "string",
            "enum": ["find_business", "find_peers", "find_person", "find_alumni_business", "general"],
        },
        "entities": {
            "type": "object",
            "properties": {
                "locations": {"type": "array", "items": {"type": "string"}},
                "skills": {"type": "array", "items": {"type": "string"}},
                "services": {"type": "array", "items": {"type": "string"}},
                "degree": {"type": ["string", "null"]},
                "year_range": {
                    "type": ["object", "null"],
                    "properties": {"min": {"type": ["integer", "null"]}, "max": {"type": ["integer", "null"]}},
                },
                "turnover_range": {
                    "type": ["object", "null"],
                    "properties": {"min": {"type": ["number", "null"]}, "max": {"type": ["number", "null"]}},
                },
                "member_type": {
                    "type": ["string", "null"],
                    "enum": ["alumni", "entrepreneur", "resident", "generic", None],
                },
                "names": {"type": "array", "items": {"type": "string"}},
            },
        },
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
    },
    "required": ["intent", "entities", "confidence"],
}

EXTRACTION_SYSTEM_PROMPT = (
    "You extract search filters from messages sent to a community member directory. "
    "Reply with a single JSON object that matches this JSON schema and nothing else:\n"
    "{schema}\n\n"
    "Rules:\n"
    "- Turnover amounts are in rupees. 1 crore = 10000000, 1 lakh = 100000.\n"
    "- Years are graduation years (four digits).\n"
    "- Use member_search for people/business lookups, document_qa for questions about "
    "community rules or documents, hybrid when both apply, conversational for greetings.\n"
    "- Leave a field empty rather than guessing.\n"
    "{context}"
)

EXTRACTION_CONTEXT_TEMPLATE = "\nRecent conversation (oldest first):\n{turns}\n"
