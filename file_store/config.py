"""Configuration settings for the File Store Server."""
import os

# Server
PORT = int(os.getenv("PORT", "5000"))
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "./logs")

# Storage backend: "mongo" or "filesystem"
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "mongo")

# MongoDB
MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB = os.getenv("MONGO_DB", "file_store")
BUCKET_NAME = os.getenv("BUCKET_NAME", "filesBucket")

# Directory paths (filesystem backend)
DATA_DIR = os.getenv("DATA_DIR", "./data")

# Blob constraints
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", str(255 * 1024)))  # 255KB
MAX_UPLOAD_SIZE = int(os.getenv("MAX_UPLOAD_SIZE", str(512 * 1024 * 1024)))  # 512MB
MAX_FILENAME_LENGTH = 255

# Upload read size when consuming multipart files
READ_SIZE = 64 * 1024  # 64KB
