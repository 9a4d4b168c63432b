from brain_integration.ingest.records import figure_lines, records_to_documents

_SCRAPED = [
    {
        "company_name": "Microsoft Corporation",
        "symbol": "MSFT",
        "totalRevenue": 211915000000,
        "netIncome": 72361000000,
        "exchange": "NASDAQ",
        "sector": "Technology",
        "scraped_at": "2026-05-01T09:30:00Z",
    },
    {
        "company_name": "Amazon.com Inc",
        "totalRevenue": 513983000000,
        "netIncome": -2722000000,
        "operatingMargin": 0.0245,
    },
    {"totalRevenue": 1},
    "not a record",
]


def test_records_become_readable_keyed_documents() -> None:
    docs = records_to_documents(_SCRAPED, "TEST_SOURCE")

    assert [doc.id for doc in docs] == [
        "scraped:test-source:msft",
        "scraped:test-source:amazon-com-inc",
    ]
    msft, amzn = docs
    assert msft.text.startswith("Microsoft Corporation (MSFT) financial data from TEST_SOURCE.")
    assert "Total Revenue: 211915000000" in msft.text
    assert "Exchange: NASDAQ" in msft.text
    assert msft.metadata == {
        "company": "Microsoft Corporation",
        "source": "TEST_SOURCE",
        "type": "scraped_financials",
        "symbol": "MSFT",
        "exchange": "NASDAQ",
        "sector": "Technology",
        "date": "2026-05-01",
    }
    assert msft.created_at.isoformat() == "2026-05-01T09:30:00+00:00"
    assert "Net Income: -2722000000" in amzn.text
    assert "Operating Margin: 0.02" in amzn.text


def test_rescraping_a_company_reuses_its_id() -> None:
    first = records_to_documents([{"symbol": "AAPL", "price": 190.5}], "yahoo")
    second = records_to_documents([{"symbol": "aapl", "price": 192.0}], "yahoo")

    assert first[0].id == second[0].id == "scraped:yahoo:aapl"


def test_figure_lines_labels_fields() -> None:
    lines = figure_lines({"freeCashFlow": 120000000, "ev_to_ebitda": 11.5, "note": None})

    assert lines == ["Free Cash Flow: 120000000", "Ev To Ebitda: 11.50"]
