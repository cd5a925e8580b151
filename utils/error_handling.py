from dataclasses import dataclass, asdict, field
from datetime import UTC, datetime
from typing import Dict, Optional, Any


# Custom Exception Classes
class ScraperError(Exception):
    """Base exception for all scraper errors"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class ParsingError(ScraperError):
    """Errors during HTML/data parsing"""

    def __init__(
        self,
        message: str,
        element: str = "",
        html: str = "",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.element = element
        # Keep error messages readable for huge documents
        self.html = html if len(html) <= 500 else html[:500] + "..."


class ExtractionError(ScraperError):
    """An item did not reach a settled outcome and its job should retry"""

    pass


class ConfigurationError(ScraperError):
    """Configuration-related errors"""

    pass


class DiscoveryError(ScraperError):
    """Raised when the first page of a listing cannot be fetched or parsed"""

    pass


class PersistenceError(ScraperError):
    """Storage failures scoped to a single item"""

    pass


@dataclass
class ErrorContext:
    """Captures where in the scraping flow an error happened"""

    stage: str
    identifier: str
    url: Optional[str] = None
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    additional_data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data
