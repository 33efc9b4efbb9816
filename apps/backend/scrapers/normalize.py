"""
Field normalization shared by the source adapters.

Turns free-text job fields (job type, salary snippets, descriptions) into the
structured values stored on JobPosting, and computes the dedup fingerprint.
"""
import re
import hashlib
from typing import List, Optional, Tuple

from core.models import JobType

COMMON_SKILLS = [
    'JavaScript', 'TypeScript', 'Python', 'Java', 'C#', 'C++', 'PHP', 'Ruby', 'Go', 'Rust',
    'React', 'Angular', 'Vue.js', 'Node.js', 'Express', 'Django', 'Flask', 'Spring', 'Laravel',
    'AWS', 'Azure', 'GCP', 'Docker', 'Kubernetes', 'Jenkins', 'Git', 'MongoDB', 'PostgreSQL',
    'MySQL', 'Redis', 'Elasticsearch', 'GraphQL', 'REST', 'Microservices', 'Agile',
    'Scrum', 'DevOps', 'CI/CD', 'Linux', 'Android', 'iOS', 'React Native',
    'Flutter', 'Unity', 'Machine Learning', 'Data Science',
    'TensorFlow', 'PyTorch', 'Pandas', 'NumPy', 'Tableau', 'Power BI', 'Excel',
    'Project Management', 'Leadership', 'Communication',
]

MAX_SKILLS = 20
MAX_REQUIREMENTS = 10

REQUIREMENT_MARKERS = ('require', 'must have', 'experience with', 'knowledge of', 'proficiency in')
REMOTE_MARKERS = ('remote', 'work from home', 'wfh', 'telecommute')

HOURS_PER_YEAR = 2080

_SALARY_NUMBER = re.compile(r'(\d+(?:\.\d+)?)\s*(k)?', re.IGNORECASE)
_SALARY_RANGE = re.compile(
    r'(\d+(?:\.\d+)?)\s*(k)?\s*(?:-|–|to)\s*(\d+(?:\.\d+)?)\s*(k)?',
    re.IGNORECASE,
)


def _skill_pattern(skill: str) -> re.Pattern:
    # Word boundaries that still work for names ending in symbols (C#, C++)
    return re.compile(r'(?<![\w.])' + re.escape(skill.lower()) + r'(?![\w])')


_SKILL_PATTERNS = [(skill, _skill_pattern(skill)) for skill in COMMON_SKILLS]


def normalize_job_type(raw: Optional[str]) -> JobType:
    if not raw:
        return JobType.FULL_TIME
    value = raw.lower()
    if 'full' in value or 'permanent' in value:
        return JobType.FULL_TIME
    if 'part' in value:
        return JobType.PART_TIME
    if 'contract' in value:
        return JobType.CONTRACT
    if 'intern' in value:
        return JobType.INTERNSHIP
    if 'freelance' in value:
        return JobType.FREELANCE
    if 'temp' in value:
        return JobType.TEMPORARY
    return JobType.FULL_TIME


def parse_salary(raw: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """
    Parse a salary snippet into an annual (min, max).

    Handles ranges ("$80,000 - $100,000"), thousands shorthand ("80k-100k",
    "80 - 100"), single amounts, and hourly rates.
    """
    if not raw:
        return None, None

    text = raw.replace('$', '').replace(',', '').replace('£', '').replace('€', '')
    hourly = 'hour' in text.lower()

    match = _SALARY_RANGE.search(text)
    if match:
        pairs = [(match.group(1), match.group(2)), (match.group(3), match.group(4))]
    else:
        match = _SALARY_NUMBER.search(text)
        if not match:
            return None, None
        pairs = [(match.group(1), match.group(2))]

    amounts = []
    for number, k_suffix in pairs:
        value = float(number)
        if hourly:
            value *= HOURS_PER_YEAR
        elif k_suffix or value < 1000:
            value *= 1000
        amounts.append(int(value))

    low = amounts[0]
    high = amounts[-1]
    if high < low:
        low, high = high, low
    return low, high


def extract_requirements(description: str) -> List[str]:
    requirements = []
    for sentence in re.split(r'[.!?]+', description or ''):
        lower = sentence.lower()
        if any(marker in lower for marker in REQUIREMENT_MARKERS):
            cleaned = sentence.strip()
            if cleaned:
                requirements.append(cleaned)
        if len(requirements) >= MAX_REQUIREMENTS:
            break
    return requirements


def extract_skills(description: str) -> List[str]:
    text = (description or '').lower()
    found = [skill for skill, pattern in _SKILL_PATTERNS if pattern.search(text)]
    return found[:MAX_SKILLS]


def extract_experience(title: str, description: str = '') -> str:
    text = f"{title} {description}".lower()
    if any(word in text for word in ('senior', 'lead', 'principal', 'head of')):
        return 'SENIOR'
    if any(word in text for word in ('junior', 'entry', 'graduate', 'intern')):
        return 'JUNIOR'
    return 'MID'


def detect_remote(location: str, description: str = '') -> bool:
    text = f"{location} {description}".lower()
    return any(marker in text for marker in REMOTE_MARKERS)


def _fingerprint_part(value: Optional[str]) -> str:
    value = (value or '').lower()
    value = re.sub(r'[^\w\s]', ' ', value)
    return ' '.join(value.split())


def compute_fingerprint(title: str, company_name: str, location: str) -> str:
    """Dedup key over normalized (title, company, location)."""
    parts = [_fingerprint_part(title), _fingerprint_part(company_name), _fingerprint_part(location)]
    return hashlib.sha256('|'.join(parts).encode('utf-8')).hexdigest()
