"""Order fulfillment service: checkout, order lifecycle, driver allocation and notifications."""
