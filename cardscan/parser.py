import re
import logging
from typing import Iterable, List, Optional, Tuple

from .confidence import clamp
from .models import BatchFailure, ContactSource, ExtractBatchResult, ExtractedContact

logger = logging.getLogger(__name__)

HAN = "\u4e00-\u9fff"

# Fields that count toward the local confidence score
SCORED_FIELDS = ("name", "email", "phone", "mobile", "company", "job_title", "address")

COMMON_SURNAMES = set(
    "王李張张劉刘陳陈楊杨黃黄"
    "趙赵吳吴周徐孫孙馬马朱胡"
    "郭何高林鄭郑謝谢羅罗梁宋"
    "唐許许韓韩馮冯鄧邓曹彭曾"
    "蕭萧田董袁潘於蒋蔡余杜葉"
    "叶程蘇苏魏呂丁任沈姚盧卢"
    "傅鍾钟姜崔譚谭廖戚莫孔向湯汤"
)

COMMON_FIRST_NAMES = {
    "james", "robert", "john", "michael", "david", "william", "richard",
    "thomas", "christopher", "charles", "daniel", "matthew", "anthony",
    "mark", "donald", "steven", "paul", "joshua", "kenneth", "kevin",
    "brian", "george", "edward", "ronald", "timothy", "jason", "jeffrey",
    "ryan", "jacob", "gary", "nicholas", "eric", "jonathan", "stephen",
    "mary", "patricia", "jennifer", "linda", "elizabeth", "barbara",
    "susan", "jessica", "sarah", "karen", "nancy", "lisa", "helen",
    "sandra", "donna", "carol", "ruth", "sharon", "michelle", "laura",
    "kimberly", "amy", "angela", "emma", "olivia", "catherine", "rachel",
    "julie", "anna", "grace", "alex", "alexander", "andrew", "ben",
    "benjamin", "chris", "dan", "dave", "frank", "greg", "jack", "jane",
    "jim", "joe", "joseph", "kate", "kelly", "kim", "maria", "martin",
    "matt", "mike", "nick", "peter", "sam", "samuel", "scott", "steve",
    "tom", "tony", "wei", "ming", "kevin", "vincent", "jenny", "amanda",
}

COMPANY_WORDS = {
    "inc", "llc", "ltd", "limited", "corp", "corporation", "company", "co",
    "technologies", "technology", "systems", "group", "solutions", "associates",
    "partners", "enterprises", "consulting", "services", "holdings",
    "international", "global", "industries", "manufacturing", "studio",
    "communications", "media", "healthcare", "financial", "capital",
    "investments", "logistics", "labs", "bank", "insurance", "agency",
}

CJK_COMPANY_SUFFIXES = (
    "股份有限公司",
    "有限公司",
    "公司",
    "企業",
    "集團",
    "科技",
    "工作室",
    "事務所",
)

TITLE_WORDS = {
    "manager", "director", "engineer", "developer", "designer", "consultant",
    "analyst", "president", "founder", "chairman", "officer", "specialist",
    "supervisor", "executive", "coordinator", "agent", "architect", "partner",
    "ceo", "cto", "cfo", "coo", "vp", "head", "lead", "principal",
}

CJK_TITLE_SUFFIXES = (
    "經理", "總監", "主管", "專員", "工程師",
    "設計師", "顧問", "分析師", "總裁",
    "執行長", "董事", "秘書", "助理",
    "主任", "組長", "課長",
)

ADDRESS_WORDS = {
    "road", "rd", "street", "st", "avenue", "ave", "drive", "dr", "lane", "ln",
    "boulevard", "blvd", "suite", "floor", "fl", "room", "building", "bldg",
    "district", "dist", "city", "county", "highway", "way", "plaza", "box",
}

CJK_ADDRESS_CHARS = "路街巷弄號樓室市縣區"

WEBSITE_TLDS = {
    "com", "net", "org", "edu", "gov", "io", "co", "ai", "app", "dev", "biz", "info",
    "tw", "cn", "hk", "jp", "kr", "sg", "uk", "us", "ca", "au", "de", "fr", "in",
}

NON_NAME_WORDS = (
    COMPANY_WORDS | TITLE_WORDS | ADDRESS_WORDS
    | {"phone", "mobile", "email", "address", "website", "tel", "fax", "cell",
       "senior", "junior", "software", "sales", "marketing"}
)

MOBILE_LABEL = re.compile(r"(?:\b(?:mobile|cell|mob|m)|手機|行動)\s*[:.：]", re.IGNORECASE)
PHONE_LABEL = re.compile(r"(?:\b(?:tel|phone|office|t|p|o)|電話)\s*[:.：]", re.IGNORECASE)
FAX_LABEL = re.compile(r"\bfax\b|\bf\s*[:.：]|傳真", re.IGNORECASE)


class LocalPatternExtractor:
    """Offline contact parser built on regular expressions and line heuristics."""

    def __init__(self):
        self.patterns = {
            "email": re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
            "phone": re.compile(r"(?:\+|\(|\b)[0-9][0-9\s\-().]{5,}[0-9]"),
            "website": re.compile(
                r"(?:https?://)?(?:www\.)?[a-zA-Z0-9-]+(?:\.[a-zA-Z0-9-]+)*\.[a-zA-Z]{2,}(?:/[^\s]*)?"
            ),
            "zip": re.compile(r"\b\d{5}(?:-\d{4})?\b"),
            "cjk_name": re.compile(rf"^[{HAN}]{{2,4}}$"),
            "cjk_spaced_name": re.compile(rf"^([{HAN}])\s+([{HAN}](?:\s*[{HAN}]){{0,2}})$"),
            "words": re.compile(r"[A-Za-z]+"),
        }

    # =========================
    # PUBLIC API
    # =========================

    def extract(self, raw_text: str) -> ExtractedContact:
        """
        Parse card text into a contact.

        Args:
            raw_text: Recognized card text, one card line per text line

        Returns:
            ExtractedContact with source ``local``
        """
        if not raw_text or not raw_text.strip():
            return ExtractedContact(source=ContactSource.LOCAL, confidence=0.0)

        lines = [l.strip() for l in raw_text.split("\n") if l.strip()]
        phone, mobile = self._extract_numbers(lines)

        contact = ExtractedContact(
            source=ContactSource.LOCAL,
            name=self._extract_name(lines),
            company=self._extract_company(lines),
            job_title=self._extract_title(lines),
            email=self._extract_email(raw_text),
            phone=phone,
            mobile=mobile,
            address=self._extract_address(lines),
            website=self._extract_website(lines),
        )
        contact.confidence = self.calculate_confidence(contact)

        logger.debug(f"Local parse: {contact.filled_fields()} ({contact.confidence:.2f})")
        return contact

    def extract_batch(self, texts: Iterable[str]) -> ExtractBatchResult:
        result = ExtractBatchResult()
        for index, text in enumerate(texts):
            try:
                result.successful.append(self.extract(text))
            except (TypeError, AttributeError) as e:
                result.failed.append(BatchFailure(index=index, error=e, original_input=text))
        return result

    @staticmethod
    def calculate_confidence(contact: ExtractedContact) -> float:
        """Share of scored fields filled, with bonuses for name, email and a number."""
        filled = sum(1 for field in SCORED_FIELDS if getattr(contact, field))
        confidence = filled / len(SCORED_FIELDS)

        if contact.name:
            confidence += 0.1
        if contact.email:
            confidence += 0.05
        if contact.phone or contact.mobile:
            confidence += 0.05

        return clamp(confidence)

    # =========================
    # HELPERS
    # =========================

    def _words(self, line: str) -> List[str]:
        return [w.lower() for w in self.patterns["words"].findall(line)]

    def _is_contact_info(self, line: str) -> bool:
        return (
            bool(self.patterns["email"].search(line))
            or sum(c.isdigit() for c in line) >= 7
            or "http" in line.lower()
            or "www." in line.lower()
        )

    def _has_cjk_company_suffix(self, line: str) -> bool:
        return any(suffix in line for suffix in CJK_COMPANY_SUFFIXES)

    # =========================
    # NAME
    # =========================

    def _extract_name(self, lines: List[str]) -> Optional[str]:
        cjk = self._extract_cjk_name(lines)
        if cjk:
            return cjk
        return self._extract_latin_name(lines)

    def _extract_cjk_name(self, lines: List[str]) -> Optional[str]:
        candidates = []
        for i, line in enumerate(lines):
            if self._has_cjk_company_suffix(line) or any(line.endswith(t) for t in CJK_TITLE_SUFFIXES):
                continue

            compact = None
            if self.patterns["cjk_name"].match(line):
                compact = line
            else:
                spaced = self.patterns["cjk_spaced_name"].match(line)
                if spaced:
                    compact = re.sub(r"\s+", "", line)

            if compact and not any(ch in CJK_ADDRESS_CHARS for ch in compact[1:]):
                priority = 10 if compact[0] in COMMON_SURNAMES else 5
                candidates.append((compact, i, priority))

        if not candidates:
            return None
        candidates.sort(key=lambda c: (c[2], -c[1]), reverse=True)
        return candidates[0][0]

    def _extract_latin_name(self, lines: List[str]) -> Optional[str]:
        potential_names: List[Tuple[str, int, int]] = []

        for i, line in enumerate(lines[:8]):
            if self._is_contact_info(line):
                continue

            lower_words = set(self._words(line))
            if lower_words & NON_NAME_WORDS:
                # "Jane Smith, Director" keeps the part before the comma
                head = line.split(",")[0].strip()
                if head != line and not (set(self._words(head)) & NON_NAME_WORDS):
                    line = head
                else:
                    continue

            if sum(c.isdigit() for c in line) > 0:
                continue

            words = [w.strip(",.") for w in line.split()]
            if not 2 <= len(words) <= 4:
                continue
            if not all(w[:1].isupper() and w.replace("-", "").replace("'", "").isalpha() for w in words):
                continue
            # All-caps lines of three or more words read as company names
            if line.isupper() and len(words) >= 3:
                continue

            first = words[0].lower()
            if first in COMMON_FIRST_NAMES:
                priority = 10
            elif len(words) == 2:
                priority = 5
            else:
                priority = 3
            potential_names.append((" ".join(words), i, priority))

        if not potential_names:
            return None

        # Earlier lines get preference within the same priority
        potential_names.sort(key=lambda c: c[2] + max(0, 8 - c[1]) * 0.5, reverse=True)
        return potential_names[0][0]

    # =========================
    # COMPANY / TITLE
    # =========================

    def _extract_company(self, lines: List[str]) -> Optional[str]:
        for line in lines:
            for suffix in CJK_COMPANY_SUFFIXES:
                match = re.search(rf"([{HAN}A-Za-z0-9]+{suffix})", line)
                if match:
                    return match.group(1)

        potential_companies = []
        for i, line in enumerate(lines):
            if self._is_contact_info(line):
                continue

            words = self._words(line)
            if set(words) & COMPANY_WORDS:
                potential_companies.append((line, i, 10))
            elif line.isupper() and len(line.split()) >= 2 and not set(words) & TITLE_WORDS:
                potential_companies.append((line, i, 5))

        if not potential_companies:
            return None

        potential_companies.sort(key=lambda c: c[2] + max(0, 10 - c[1]) * 0.1, reverse=True)
        return potential_companies[0][0]

    def _extract_title(self, lines: List[str]) -> Optional[str]:
        for line in lines:
            for suffix in CJK_TITLE_SUFFIXES:
                match = re.search(rf"([{HAN}]*{suffix})", line)
                if match:
                    return match.group(1)

        for line in lines:
            if self._is_contact_info(line):
                continue
            words = self._words(line)
            if set(words) & TITLE_WORDS and not set(words) & COMPANY_WORDS:
                # "Jane Smith, Director" keeps the part after the comma
                if "," in line:
                    tail = line.split(",", 1)[1].strip()
                    if set(self._words(tail)) & TITLE_WORDS:
                        return tail
                return line

        return None

    # =========================
    # CONTACT DETAILS
    # =========================

    def _extract_email(self, text: str) -> Optional[str]:
        m = self.patterns["email"].search(text)
        return m.group(0) if m else None

    def _extract_numbers(self, lines: List[str]) -> Tuple[Optional[str], Optional[str]]:
        """Return (phone, mobile) from labelled or shaped numbers."""
        phone = None
        mobile = None

        for line in lines:
            if self.patterns["email"].search(line):
                continue

            for match in self.patterns["phone"].finditer(line):
                number = match.group(0).strip()
                digits = sum(c.isdigit() for c in number)
                if not 7 <= digits <= 15:
                    continue

                label = self._nearest_label(line[:match.start()])
                if label == "fax":
                    continue
                if label == "mobile":
                    mobile = mobile or number
                elif label == "phone":
                    phone = phone or number
                elif self._looks_like_mobile(number) and mobile is None:
                    mobile = number
                elif phone is None:
                    phone = number
                elif mobile is None:
                    mobile = number

        return phone, mobile

    @staticmethod
    def _nearest_label(prefix: str) -> Optional[str]:
        """The label closest before a number: "mobile", "phone", "fax" or None."""
        best = None
        best_pos = -1
        for name, pattern in (("mobile", MOBILE_LABEL), ("phone", PHONE_LABEL), ("fax", FAX_LABEL)):
            for match in pattern.finditer(prefix):
                if match.start() > best_pos:
                    best, best_pos = name, match.start()
        return best

    @staticmethod
    def _looks_like_mobile(number: str) -> bool:
        compact = re.sub(r"[\s\-().]", "", number)
        return compact.startswith(("09", "+8869", "8869", "07"))

    def _extract_address(self, lines: List[str]) -> Optional[str]:
        for line in lines:
            if self.patterns["email"].search(line):
                continue
            candidate = re.sub(r"^(?:address|addr|地址)\s*[:：]?\s*", "", line, flags=re.IGNORECASE)
            words = set(self._words(candidate))
            has_keyword = bool(words & ADDRESS_WORDS) and any(c.isdigit() for c in candidate)
            has_cjk = sum(ch in CJK_ADDRESS_CHARS for ch in candidate) >= 2
            has_zip = bool(self.patterns["zip"].search(candidate)) and bool(words)
            if (has_keyword or has_cjk or has_zip) and len(candidate) >= 10:
                return candidate.strip()
        return None

    def _extract_website(self, lines: List[str]) -> Optional[str]:
        for line in lines:
            if "@" in line:
                continue
            for m in self.patterns["website"].finditer(line):
                if self._looks_like_website(m.group(0)):
                    return m.group(0)
        return None

    @staticmethod
    def _looks_like_website(candidate: str) -> bool:
        """A scheme, a www. prefix or a known top-level domain."""
        lowered = candidate.lower()
        if lowered.startswith(("http://", "https://", "www.")):
            return True
        host = lowered.split("/", 1)[0]
        return host.rsplit(".", 1)[-1] in WEBSITE_TLDS
