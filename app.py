from dotenv import load_dotenv
import logging
import os

load_dotenv()

from api.routes import create_app  # noqa: E402

logger = logging.getLogger(__name__)

app = create_app()

if __name__ == "__main__":
    # Log startup
    logger.info("Starting Flask server...")
    app.run(debug=os.environ.get('FLASK_DEBUG') == '1', port=int(os.environ.get('PORT', 8000)), use_reloader=False)
