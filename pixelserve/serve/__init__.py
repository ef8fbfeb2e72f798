from pixelserve.serve.index import (
    FatalServeError,
    PixelServer,
    ServeRequest,
    ServeResponse,
    register_serve
)

__all__ = ['FatalServeError', 'PixelServer', 'ServeRequest', 'ServeResponse', 'register_serve']
