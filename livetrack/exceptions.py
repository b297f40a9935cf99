"""
Erreurs metier du suivi et de la repartition / Tracking and dispatch domain errors.

Les erreurs bas niveau (store, reseau, transporteurs) sont traduites ici
avant d'atteindre les routes / Low-level errors are translated to this
taxonomy before reaching the routes.
"""


class TrackingError(Exception):
    """Base de la taxonomie / Taxonomy base."""

    code = "tracking_error"
    status_code = 500
    user_message = "Something went wrong"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.user_message)
        self.detail = detail or self.user_message


class PermissionDenied(TrackingError):
    """Acces a la localisation refuse / Location access refused (user action needed)."""

    code = "permission_denied"
    status_code = 403
    user_message = "Location access is disabled. Enable location services to start tracking."


class LocationUnavailable(TrackingError):
    """Pas de position GPS / No GPS fix (transient)."""

    code = "location_unavailable"
    status_code = 503
    user_message = "Waiting for a GPS fix. Make sure location services are enabled."


class StoreConnectionLost(TrackingError):
    """Connexion au store perdue / Location store connection dropped."""

    code = "store_connection_lost"
    status_code = 503
    user_message = "Reconnecting..."


class InvalidStateTransition(TrackingError):
    code = "invalid_state_transition"
    status_code = 409
    user_message = "That action is not available right now"

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot go from '{current}' to '{target}'")
        self.current = current
        self.target = target


class OrderAlreadyAssigned(TrackingError):
    """Commande modifiee entre lecture et ecriture / Order changed between read and write."""

    code = "order_already_assigned"
    status_code = 409
    user_message = "This order was already assigned. Refresh and try again."

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} is no longer assignable")
        self.order_id = order_id


class DriverUnavailable(TrackingError):
    code = "driver_unavailable"
    status_code = 409
    user_message = "Driver no longer available, pick another"

    def __init__(self, driver_id: str):
        super().__init__(f"Driver {driver_id} is not available")
        self.driver_id = driver_id


class OrderNotFound(TrackingError):
    code = "order_not_found"
    status_code = 404
    user_message = "Order not found"


class DriverNotFound(TrackingError):
    code = "driver_not_found"
    status_code = 404
    user_message = "Driver not found"


class ProviderError(TrackingError):
    """Erreur transporteur tiers / Third-party courier error."""

    code = "provider_error"
    status_code = 502
    user_message = "The delivery partner could not process the request"


class InvalidWebhook(TrackingError):
    code = "invalid_webhook"
    status_code = 401
    user_message = "Invalid webhook"
