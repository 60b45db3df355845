from newsai.api.routes import router

__all__ = ["router"]
