"""
Blueprint registration and helpers shared by every route module.
"""

import functools

from flask import jsonify, request

from command_portal.errors import PortalError, UpstreamError, ValidationError, safe_error_response
from command_portal.validators import clamp_int


def register_blueprints(app):
    from command_portal.routes.devtools import devtools_bp
    from command_portal.routes.infrastructure import infra_bp
    from command_portal.routes.observability import observability_bp
    from command_portal.routes.system import system_bp
    from command_portal.routes.tabby import tabby_bp

    app.register_blueprint(infra_bp, url_prefix='/api/infra')
    app.register_blueprint(devtools_bp, url_prefix='/api/devtools')
    app.register_blueprint(observability_bp, url_prefix='/api/observability')
    app.register_blueprint(tabby_bp, url_prefix='/api/tabby')
    app.register_blueprint(system_bp, url_prefix='/api/system')


def operation(user_message):
    """
    Name the operation a route performs. Client-actionable errors pass
    through to the app error handlers; anything else is logged in full and
    answered with `user_message` plus an error reference.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except PortalError as e:
                if e.public and not isinstance(e, UpstreamError):
                    raise
                if isinstance(e, UpstreamError) and e.status == 404:
                    raise
                body, status = safe_error_response(e, user_message, request.endpoint)
                return jsonify(body), status
            except Exception as e:
                body, status = safe_error_response(e, user_message, request.endpoint)
                return jsonify(body), status
        return wrapper
    return decorator


def json_body():
    """Request JSON object, {} when absent"""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object', reason='invalid_body')
    return data


def pagination(default_size=50, max_size=500):
    """(page, page_size) from 1-indexed ?page=&pageSize="""
    page = clamp_int(request.args.get('page'), 1, 1, 1_000_000)
    page_size = clamp_int(request.args.get('pageSize'), default_size, 1, max_size)
    return page, page_size


def paginate(items, page, page_size):
    start = (page - 1) * page_size
    total = len(items)
    return {
        'items': items[start:start + page_size],
        'total': total,
        'page': page,
        'pageSize': page_size,
        'totalPages': (total + page_size - 1) // page_size if total else 0,
    }
