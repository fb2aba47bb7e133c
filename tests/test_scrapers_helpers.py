from __future__ import annotations

import unittest

from scrapers import (
    PLACEHOLDER_IMAGE,
    RETAILERS,
    build_search_url,
    extract_make_and_model,
    extract_retailer_from_url,
    mock_products,
    normalize_product,
    parse_price,
)


class ScraperHelpersTests(unittest.TestCase):
    def test_extract_retailer_from_url(self) -> None:
        self.assertEqual(extract_retailer_from_url("https://www.bestbuy.com/site/lg/123.p"), "Best Buy")
        self.assertEqual(extract_retailer_from_url("https://www.homedepot.com/p/x/1"), "Home Depot")
        self.assertEqual(extract_retailer_from_url("https://www.lowes.com/pd/x/1"), "Lowes")
        self.assertIsNone(extract_retailer_from_url("https://example.com/item"))
        self.assertIsNone(extract_retailer_from_url("not a url"))

    def test_extract_make_and_model_from_name(self) -> None:
        self.assertEqual(
            extract_make_and_model("Samsung 28 cu. ft. RF28R7201SR French Door Refrigerator"),
            ("Samsung", "RF28R7201SR"),
        )
        self.assertEqual(
            extract_make_and_model("Whirlpool 25 cu. ft. Side-by-Side WRS325SDHZ"),
            ("Whirlpool", "WRS325SDHZ"),
        )
        self.assertEqual(
            extract_make_and_model("GE Profile PFE28KYNFS-1 Refrigerator"),
            ("GE", "PFE28KYNFS-1"),
        )

    def test_extract_model_from_feature_labels(self) -> None:
        self.assertEqual(
            extract_make_and_model("Bosch 300 Series Dishwasher", ["Quiet 44 dBA", "Model #: SHE53C85N stainless"]),
            ("Bosch", "SHE53C85N"),
        )
        self.assertEqual(extract_make_and_model("Generic Fan", ["Blue"]), (None, None))

    def test_parse_price(self) -> None:
        self.assertEqual(parse_price("$1,299.99"), 1299.99)
        self.assertEqual(parse_price(849), 849.0)
        self.assertEqual(parse_price("Was $999.00"), 999.0)
        self.assertEqual(parse_price("$1,299.99 - $1,499.99"), 1299.99)
        self.assertEqual(parse_price("$2,049 / $2,599"), 2049.0)
        self.assertIsNone(parse_price("N/A"))
        self.assertIsNone(parse_price(None))

    def test_normalize_product_aliases(self) -> None:
        product = normalize_product(
            {
                "title": "LG Front Load Washer",
                "price": "$799.00",
                "link": "https://www.bestbuy.com/site/lg-washer/1.p",
                "thumbnail": "https://pisces.bbystatic.com/image.jpg",
                "specs": ["Front load", "", 5],
            },
            "Best Buy",
        )
        self.assertIsNotNone(product)
        self.assertEqual(product.name, "LG Front Load Washer")
        self.assertEqual(product.price, 799.0)
        self.assertEqual(product.product_url, "https://www.bestbuy.com/site/lg-washer/1.p")
        self.assertEqual(product.image_url, "https://pisces.bbystatic.com/image.jpg")
        self.assertEqual(product.features, ["Front load"])
        self.assertEqual(product.retailer, "Best Buy")

    def test_normalize_product_price_fallback_keys_and_placeholder(self) -> None:
        product = normalize_product(
            {"product_name": "Dryer", "final_price": 10, "product_url": "https://www.lowes.com/pd/1"},
            "Lowes",
        )
        self.assertEqual(product.price, 10.0)
        self.assertEqual(product.image_url, PLACEHOLDER_IMAGE)

        from_images = normalize_product(
            {"name": "Oven", "price": 1, "url": "https://www.lowes.com/pd/2", "images": ["https://img.example/o.jpg"]},
            "Lowes",
        )
        self.assertEqual(from_images.image_url, "https://img.example/o.jpg")

    def test_normalize_product_drops_invalid_items(self) -> None:
        base = {"name": "Washer", "price": 500, "url": "https://www.bestbuy.com/p/1"}
        self.assertIsNotNone(normalize_product(base, "Best Buy"))
        self.assertIsNone(normalize_product({**base, "name": ""}, "Best Buy"))
        self.assertIsNone(normalize_product({**base, "price": 0}, "Best Buy"))
        self.assertIsNone(normalize_product({**base, "price": -5}, "Best Buy"))
        self.assertIsNone(normalize_product({**base, "price": -0.01}, "Best Buy"))
        self.assertIsNone(normalize_product({**base, "price": "call for price"}, "Best Buy"))
        self.assertIsNone(normalize_product({**base, "url": "/site/relative"}, "Best Buy"))
        self.assertIsNone(normalize_product({**base, "image": "not-a-url"}, "Best Buy"))

    def test_build_search_url(self) -> None:
        best_buy, home_depot, lowes = RETAILERS
        self.assertEqual(
            build_search_url(best_buy, "french door fridge"),
            "https://www.bestbuy.com/site/searchpage.jsp?st=french%20door%20fridge",
        )
        self.assertEqual(build_search_url(home_depot, "washer"), "https://www.homedepot.com/s/washer")
        self.assertEqual(build_search_url(lowes, "gas range"), "https://www.lowes.com/search?searchTerm=gas%20range")

    def test_mock_products_are_tagged(self) -> None:
        fridges = mock_products("refrigerator", "API credentials missing")
        self.assertEqual(len(fridges), 2)
        self.assertTrue(all(item.name.startswith("[DEMO]") for item in fridges))
        self.assertIn("API credentials missing", fridges[0].name)

        generic = mock_products("Dehumidifier", "No products found")
        self.assertIn("Dehumidifier", generic[0].name)


if __name__ == "__main__":
    unittest.main()
