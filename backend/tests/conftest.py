import os

# Set environment variables for tests before anything imports the app settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["PULSEMCP_MOCK_MODE"] = "true"
os.environ["AUTO_CREATE_TABLES"] = "false"
