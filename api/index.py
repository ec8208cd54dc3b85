from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from welfare.api import create_app
from welfare.logging_config import setup_logging

setup_logging()

app = create_app(root_path="/api")

handler = Mangum(app)
