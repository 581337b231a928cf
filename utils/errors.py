# utils/errors.py
"""
业务异常分类：
- 鉴权/归属错误、不存在：致命，不重试
- 完整性错误（收益超上限、交易哈希重复）：致命且大声记录日志，对外只返回通用错误
- 并发失败（CAS 影响 0 行）不是异常，由调用方作为“已处理”结果返回
"""


class BoltError(Exception):
    status_code = 400
    public_message = 'Request failed'

    def __init__(self, message=None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    def to_response(self):
        return {'success': False, 'message': self.public_message_for_client()}

    def public_message_for_client(self):
        return self.message


class AuthenticationError(BoltError):
    status_code = 401
    public_message = 'Authentication required'


class NotFoundError(BoltError):
    status_code = 404
    public_message = 'Resource not found'

    def public_message_for_client(self):
        return self.public_message


class AuthorizationError(NotFoundError):
    # 与 NotFound 返回同样的 404，避免泄露别人的 session/payment 是否存在
    pass


class ValidationError(BoltError):
    status_code = 400


class RateLimitedError(BoltError):
    status_code = 429
    public_message = 'Too many requests, please retry later'

    def __init__(self, message=None, retry_after=None):
        super().__init__(message)
        self.retry_after = retry_after


class ExternalServiceError(BoltError):
    status_code = 502
    public_message = 'Payment provider unavailable, please retry later'

    def public_message_for_client(self):
        return self.public_message


class IntegrityViolation(BoltError):
    status_code = 500
    public_message = 'Internal server error'

    def public_message_for_client(self):
        return self.public_message


class AccrualBoundExceeded(IntegrityViolation):
    pass


class DuplicateTransactionError(IntegrityViolation):
    pass


class LedgerError(Exception):
    """余额入账失败（用户行不存在等），由上层转入人工对账"""


class IndexerUnavailable(Exception):
    """链上索引服务超时/不可用，验证流程降级为 pending"""
