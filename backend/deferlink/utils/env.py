def load_env_file(path: str = ".env") -> bool:
    """Load environment variables from a .env file if not already set.

    WHAT:
        Loads variables from a local .env file into os.environ.
        Does NOT overwrite existing environment variables.
    WHY:
        Lets developers keep DOMAIN, store URLs and SENTRY_DSN in a local
        file while deployment environments stay authoritative.
    """
    import logging
    from dotenv import load_dotenv

    logger = logging.getLogger(__name__)

    loaded = load_dotenv(path, override=False)

    if loaded:
        logger.info(f"Loaded local {path} file (existing variables were NOT overwritten)")
    else:
        logger.debug(f"No local {path} file found or loaded")
    return loaded
