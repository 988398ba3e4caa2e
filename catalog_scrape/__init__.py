from .errors import ScrapeError, ScrapeFailed
from .schema import ProductExtractionResult
from .scrape import ProductScraper, scrape_product_page

__version__ = "0.1.0"
