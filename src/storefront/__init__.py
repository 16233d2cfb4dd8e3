"""storefront - ecommerce backend with checkout and payment settlement."""

__version__ = "0.1.0"
