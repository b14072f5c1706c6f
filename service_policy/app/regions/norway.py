"""
Default region containment table: Norway, its fylker (2024 county structure)
and a selection of kommuner per fylke. Deployments that need the full
municipality list point `POLICY_REGION_HIERARCHY_FILE` at a JSON file with
the same shape.
"""

NORWAY = {
    "Norway": {
        "Oslo": ["Oslo"],
        "Akershus": ["Bærum", "Asker", "Lillestrøm", "Nordre Follo", "Ullensaker", "Lørenskog"],
        "Østfold": ["Fredrikstad", "Sarpsborg", "Moss", "Halden"],
        "Buskerud": ["Drammen", "Kongsberg", "Ringerike", "Lier"],
        "Vestfold": ["Sandefjord", "Larvik", "Tønsberg", "Horten"],
        "Telemark": ["Skien", "Porsgrunn", "Notodden"],
        "Agder": ["Kristiansand", "Arendal", "Grimstad", "Lindesnes"],
        "Rogaland": ["Stavanger", "Sandnes", "Haugesund", "Sola", "Karmøy"],
        "Vestland": ["Bergen", "Øygarden", "Bjørnafjorden", "Askøy", "Sunnfjord"],
        "Møre og Romsdal": ["Ålesund", "Molde", "Kristiansund"],
        "Trøndelag": ["Trondheim", "Steinkjer", "Stjørdal", "Levanger", "Malvik"],
        "Innlandet": ["Hamar", "Lillehammer", "Gjøvik", "Ringsaker", "Elverum"],
        "Nordland": ["Bodø", "Narvik", "Rana", "Vefsn"],
        "Troms": ["Tromsø", "Harstad", "Senja"],
        "Finnmark": ["Alta", "Hammerfest", "Sør-Varanger", "Vadsø"],
    }
}
