"""
Ошибки уровня хранилища и нарушения инвариантов
"""


class LoyaltyError(Exception):
    """Базовая ошибка движка лояльности"""
    pass


class TransientStoreFailure(LoyaltyError):
    """Хранилище временно недоступно, операцию повторит следующий триггер"""
    pass


class InvariantViolation(LoyaltyError):
    """Запись в состоянии, которое не должно существовать"""
    pass
